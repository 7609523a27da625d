"""Tests for StepExecutor - due-ness, schedule advancement and each step action."""

from datetime import timedelta

import pytest
from sqlalchemy.orm import Session

from dunning.models.payment import Payment
from dunning.models.shared import as_utc
from dunning.repositories.dunning_campaign_repository import DunningCampaignRepository
from dunning.repositories.failed_payment_repository import FailedPaymentRepository
from dunning.services.step_executor import StepExecutor, current_step, step_due_at
from tests.conftest import (
    T0,
    StubDispatcher,
    StubGateway,
    make_campaign,
    make_customer,
    make_failed_payment,
)


def _executor(db: Session, gateway=None, dispatcher=None) -> StepExecutor:
    return StepExecutor(db, gateway or StubGateway(succeed=False), dispatcher or StubDispatcher())


class TestScheduleHelpers:
    def test_current_step_follows_retry_attempts(self, db_session, customer):
        campaign = make_campaign(db_session)
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer)

        assert current_step(payment, steps).step_number == 1
        payment.retry_attempts = 2
        assert current_step(payment, steps).step_number == 3
        payment.retry_attempts = 3
        assert current_step(payment, steps) is None

    def test_failure_anchor_is_cumulative(self, db_session, customer):
        campaign = make_campaign(db_session, delay_anchor="failure")
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer)
        payment.last_retry_at = T0 + timedelta(days=1)

        assert step_due_at(payment, steps[1], campaign) == T0 + timedelta(days=3)

    def test_last_attempt_anchor_is_relative(self, db_session, customer):
        campaign = make_campaign(db_session, delay_anchor="last_attempt")
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer)

        assert step_due_at(payment, steps[0], campaign) == T0 + timedelta(days=1)
        payment.last_retry_at = T0 + timedelta(days=1)
        assert step_due_at(payment, steps[1], campaign) == T0 + timedelta(days=4)


class TestScenarioA:
    """retry@1, email@3, cancel@7 on a $50 payment whose retries keep failing."""

    @pytest.mark.asyncio
    async def test_failure_anchor(self, db_session, customer, subscription):
        campaign = make_campaign(db_session, delay_anchor="failure")
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer, subscription)
        dispatcher = StubDispatcher()
        executor = _executor(db_session, dispatcher=dispatcher)

        outcome = await executor.execute(campaign, steps, payment, T0 + timedelta(hours=12))
        assert outcome.executed is False
        assert payment.retry_attempts == 0

        outcome = await executor.execute(campaign, steps, payment, T0 + timedelta(days=1))
        assert outcome.executed and outcome.action == "retry_payment"
        assert outcome.success is False
        assert payment.status == "retrying"
        assert payment.retry_attempts == 1
        assert payment.dunning_campaign_id == campaign.id
        assert as_utc(payment.next_retry_at) == T0 + timedelta(days=3)

        outcome = await executor.execute(campaign, steps, payment, T0 + timedelta(days=2))
        assert outcome.executed is False

        outcome = await executor.execute(campaign, steps, payment, T0 + timedelta(days=3))
        assert outcome.action == "send_email"
        assert outcome.success is True
        assert payment.retry_attempts == 2
        assert dispatcher.sent[0]["channel"] == "email"
        assert dispatcher.sent[0]["recipient"] == customer.email
        assert dispatcher.sent[0]["variables"]["amount"] == "50.00"

        outcome = await executor.execute(campaign, steps, payment, T0 + timedelta(days=10))
        assert outcome.action == "cancel_subscription"
        assert outcome.abandoned and outcome.subscription_cancelled
        assert payment.status == "abandoned"
        assert payment.abandonment_reason == "subscription_cancelled"
        assert payment.retry_attempts == 3

        db_session.refresh(subscription)
        db_session.refresh(customer)
        assert subscription.status == "canceled"
        assert customer.access_level == "limited"

    @pytest.mark.asyncio
    async def test_last_attempt_anchor(self, db_session, customer, subscription):
        campaign = make_campaign(db_session, delay_anchor="last_attempt")
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer, subscription)
        executor = _executor(db_session)

        assert (await executor.execute(campaign, steps, payment, T0 + timedelta(days=1))).executed
        assert not (await executor.execute(campaign, steps, payment, T0 + timedelta(days=3))).executed
        assert (await executor.execute(campaign, steps, payment, T0 + timedelta(days=4))).executed
        assert not (await executor.execute(campaign, steps, payment, T0 + timedelta(days=10))).executed

        outcome = await executor.execute(campaign, steps, payment, T0 + timedelta(days=11))
        assert outcome.action == "cancel_subscription"
        assert payment.status == "abandoned"

    @pytest.mark.asyncio
    async def test_attempt_history_is_gap_free(self, db_session, customer, subscription):
        campaign = make_campaign(db_session, delay_anchor="failure")
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer, subscription)
        executor = _executor(db_session)

        for day in (1, 3, 10):
            await executor.execute(campaign, steps, payment, T0 + timedelta(days=day))

        attempts = FailedPaymentRepository(db_session).get_attempts(payment.id)
        assert [a.sequence for a in attempts] == [1, 2, 3]
        assert [a.campaign_step for a in attempts] == [1, 2, 3]
        assert [a.action for a in attempts] == ["retry_payment", "send_email", "cancel_subscription"]


class TestRetryStep:
    @pytest.mark.asyncio
    async def test_success_recovers_payment(self, db_session, customer, subscription):
        campaign = make_campaign(db_session)
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer, subscription)
        gateway = StubGateway()

        outcome = await _executor(db_session, gateway).execute(
            campaign, steps, payment, T0 + timedelta(days=1)
        )

        assert outcome.recovered is True
        assert outcome.recovered_amount == payment.amount
        assert payment.status == "recovered"
        assert payment.recovery_method == "campaign"
        assert payment.next_retry_at is None
        assert gateway.charges[0]["metadata"]["campaign_step"] == 1

        recovered = db_session.query(Payment).filter(Payment.id == payment.recovered_payment_id).one()
        assert recovered.provider_payment_id == "pi_1"
        db_session.refresh(subscription)
        assert subscription.payment_status == "current"
        assert subscription.status == "active"

    @pytest.mark.asyncio
    async def test_terminal_payment_is_never_touched_again(self, db_session, customer):
        campaign = make_campaign(db_session)
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer)
        gateway = StubGateway()
        executor = _executor(db_session, gateway)

        await executor.execute(campaign, steps, payment, T0 + timedelta(days=1))
        outcome = await executor.execute(campaign, steps, payment, T0 + timedelta(days=30))

        assert outcome.executed is False
        assert len(gateway.charges) == 1

    @pytest.mark.asyncio
    async def test_schedule_exhaustion_abandons(self, db_session, customer):
        campaign = make_campaign(
            db_session,
            steps=[
                {"step_number": 1, "delay_days": 1, "action": "retry_payment"},
                {"step_number": 2, "delay_days": 2, "action": "retry_payment"},
            ],
        )
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer)
        executor = _executor(db_session)

        await executor.execute(campaign, steps, payment, T0 + timedelta(days=1))
        outcome = await executor.execute(campaign, steps, payment, T0 + timedelta(days=2))

        assert outcome.abandoned is True
        assert payment.status == "abandoned"
        assert payment.abandonment_reason == "retry_schedule_exhausted"
        assert payment.abandoned_by == "system"

    @pytest.mark.asyncio
    async def test_missing_payment_method_is_recorded_as_failure(self, db_session):
        customer = make_customer(db_session)
        campaign = make_campaign(db_session)
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer, payment_method_id=None)
        gateway = StubGateway()

        outcome = await _executor(db_session, gateway).execute(
            campaign, steps, payment, T0 + timedelta(days=1)
        )

        assert outcome.executed and not outcome.success
        assert gateway.charges == []
        attempt = FailedPaymentRepository(db_session).get_attempts(payment.id)[0]
        assert attempt.failure_reason == "no_payment_method"


class TestNotificationSteps:
    @pytest.mark.asyncio
    async def test_undelivered_email_still_advances(self, db_session, customer):
        campaign = make_campaign(
            db_session,
            steps=[
                {"step_number": 1, "delay_days": 0, "action": "send_email"},
                {"step_number": 2, "delay_days": 5, "action": "retry_payment"},
            ],
        )
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer)

        outcome = await _executor(db_session, dispatcher=StubDispatcher(ack=False)).execute(
            campaign, steps, payment, T0
        )

        assert outcome.executed and outcome.success is False
        assert payment.retry_attempts == 1
        attempt = FailedPaymentRepository(db_session).get_attempts(payment.id)[0]
        assert attempt.failure_reason == "not_delivered"

    @pytest.mark.asyncio
    async def test_sms_without_phone(self, db_session):
        customer = make_customer(db_session, phone=None)
        campaign = make_campaign(
            db_session,
            type="sms",
            templates={"sms": {"message": "Pay {{ amount }}", "max_length": 160}},
            steps=[
                {"step_number": 1, "delay_days": 0, "action": "send_sms"},
                {"step_number": 2, "delay_days": 3, "action": "retry_payment"},
            ],
        )
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer)
        dispatcher = StubDispatcher()

        outcome = await _executor(db_session, dispatcher=dispatcher).execute(
            campaign, steps, payment, T0
        )

        assert outcome.success is False
        assert dispatcher.sent == []
        attempt = FailedPaymentRepository(db_session).get_attempts(payment.id)[0]
        assert attempt.failure_reason == "no_phone"

    @pytest.mark.asyncio
    async def test_step_webhook_sent_after_commit(self, db_session, customer):
        campaign = make_campaign(
            db_session, webhook_config={"url": "https://hooks.example.com/dunning"}
        )
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer)
        dispatcher = StubDispatcher()

        outcome = await _executor(db_session, dispatcher=dispatcher).execute(
            campaign, steps, payment, T0 + timedelta(days=1)
        )

        assert outcome.webhook_error is None
        webhook = dispatcher.sent[-1]
        assert webhook["channel"] == "webhook"
        assert webhook["recipient"] == "https://hooks.example.com/dunning"
        assert webhook["template"]["event"] == "dunning.step_executed"
        assert webhook["variables"]["status"] == "retrying"
        assert webhook["variables"]["retry_attempts"] == 1

    @pytest.mark.asyncio
    async def test_unacknowledged_webhook_reports_error(self, db_session, customer):
        campaign = make_campaign(
            db_session, webhook_config={"url": "https://hooks.example.com/dunning"}
        )
        steps = DunningCampaignRepository(db_session).get_steps(campaign.id)
        payment = make_failed_payment(db_session, customer)

        outcome = await _executor(db_session, dispatcher=StubDispatcher(ack=False)).execute(
            campaign, steps, payment, T0 + timedelta(days=1)
        )

        assert outcome.webhook_error is not None
        # The step itself is committed regardless of the webhook
        assert payment.retry_attempts == 1
