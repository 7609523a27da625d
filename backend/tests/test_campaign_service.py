"""Tests for CampaignService - validation, persistence and audit."""

import uuid

import pytest
from pydantic import ValidationError as PydanticValidationError

from dunning.core.auth import ROLE_ADMIN, Operator
from dunning.core.exceptions import ConflictError, NotFoundError, ValidationError
from dunning.models.audit_log import AuditLog
from dunning.models.dunning_campaign import DunningCampaign
from dunning.schemas.dunning_campaign import (
    DunningCampaignCreate,
    DunningCampaignStepCreate,
    DunningCampaignUpdate,
)
from dunning.services.campaign_service import CampaignService, normalize_schedule
from tests.conftest import DEFAULT_ORG_ID, EMAIL_TEMPLATE

ADMIN = Operator("admin@example.com", roles=frozenset({ROLE_ADMIN}))


def _create_payload(**overrides):
    payload = {
        "name": "Standard recovery",
        "type": "email",
        "retry_schedule": [
            {"delay_days": 1, "action": "retry_payment"},
            {"delay_days": 3, "action": "send_email"},
            {"delay_days": 7, "action": "cancel_subscription"},
        ],
        "email_template": EMAIL_TEMPLATE,
        "active": True,
    }
    payload.update(overrides)
    return DunningCampaignCreate(**payload)


class TestNormalizeSchedule:
    def test_numbers_steps_from_position(self):
        steps = normalize_schedule(
            [
                DunningCampaignStepCreate(delay_days=1, action="retry_payment"),
                DunningCampaignStepCreate(delay_days=2, action="send_email"),
            ]
        )
        assert [s["step_number"] for s in steps] == [1, 2]
        assert steps[0]["escalation_level"] == "medium"

    def test_rejects_out_of_order_numbers(self):
        with pytest.raises(ValidationError, match="1..2 in order"):
            normalize_schedule(
                [
                    DunningCampaignStepCreate(step_number=2, delay_days=1, action="retry_payment"),
                    DunningCampaignStepCreate(step_number=1, delay_days=2, action="send_email"),
                ]
            )

    def test_rejects_empty(self):
        with pytest.raises(ValidationError):
            normalize_schedule([])


class TestCreateCampaign:
    def test_create_persists_campaign_and_schedule(self, db_session):
        service = CampaignService(db_session)

        campaign = service.create_campaign(_create_payload(), DEFAULT_ORG_ID, ADMIN)

        assert campaign.status == "active"
        assert campaign.delay_anchor == "last_attempt"
        assert campaign.created_by == "admin@example.com"
        steps = service.repo.get_steps(campaign.id)
        assert [(s.step_number, s.delay_days, s.action) for s in steps] == [
            (1, 1, "retry_payment"),
            (2, 3, "send_email"),
            (3, 7, "cancel_subscription"),
        ]
        entry = db_session.query(AuditLog).one()
        assert entry.action == "DUNNING_CAMPAIGN_CREATED"
        assert entry.actor_id == "admin@example.com"
        assert entry.details["steps"] == 3

    def test_inactive_campaign_is_draft(self, db_session):
        campaign = CampaignService(db_session).create_campaign(
            _create_payload(active=False), DEFAULT_ORG_ID, ADMIN
        )
        assert campaign.status == "draft"

    def test_trigger_conditions_stored_as_json(self, db_session):
        campaign = CampaignService(db_session).create_campaign(
            _create_payload(
                trigger_conditions={"amountThreshold": "25.50", "planWhitelist": ["pro"]}
            ),
            DEFAULT_ORG_ID,
            ADMIN,
        )
        assert campaign.trigger_conditions["amount_threshold"] == "25.50"
        assert campaign.trigger_conditions["plan_whitelist"] == ["pro"]

    def test_email_campaign_requires_template(self, db_session):
        with pytest.raises(ValidationError, match="email template"):
            CampaignService(db_session).create_campaign(
                _create_payload(email_template=None), DEFAULT_ORG_ID, ADMIN
            )
        assert db_session.query(DunningCampaign).count() == 0

    def test_sms_step_requires_sms_template(self, db_session):
        payload = _create_payload(
            retry_schedule=[{"delay_days": 1, "action": "send_sms"}],
        )
        with pytest.raises(ValidationError, match="send_sms"):
            CampaignService(db_session).create_campaign(payload, DEFAULT_ORG_ID, ADMIN)

    def test_webhook_campaign_requires_config(self, db_session):
        payload = _create_payload(type="webhook", email_template=None)
        with pytest.raises(ValidationError, match="webhook config"):
            CampaignService(db_session).create_campaign(payload, DEFAULT_ORG_ID, ADMIN)

    def test_multi_campaign_with_all_channels(self, db_session):
        payload = _create_payload(
            type="multi",
            sms_template={"message": "Payment of {{ amount }} failed"},
            webhook_config={"url": "https://hooks.example.com/dunning", "secret": "s3cret"},
        )
        campaign = CampaignService(db_session).create_campaign(payload, DEFAULT_ORG_ID, ADMIN)
        assert set(campaign.templates) == {"email", "sms"}
        assert campaign.webhook_config["secret"] == "s3cret"

    def test_duplicate_name_conflicts(self, db_session):
        service = CampaignService(db_session)
        service.create_campaign(_create_payload(), DEFAULT_ORG_ID, ADMIN)
        with pytest.raises(ConflictError):
            service.create_campaign(_create_payload(), DEFAULT_ORG_ID, ADMIN)

    def test_schema_bounds(self):
        with pytest.raises(PydanticValidationError):
            _create_payload(priority=11)
        with pytest.raises(PydanticValidationError):
            _create_payload(retry_schedule=[])
        with pytest.raises(PydanticValidationError):
            _create_payload(name="ab")
        with pytest.raises(PydanticValidationError):
            _create_payload(retry_schedule=[{"delay_days": -1, "action": "retry_payment"}])


class TestUpdateCampaign:
    def test_partial_update_records_diff(self, db_session):
        service = CampaignService(db_session)
        campaign = service.create_campaign(_create_payload(), DEFAULT_ORG_ID, ADMIN)

        updated = service.update_campaign(
            campaign.id,
            DunningCampaignUpdate(priority=9, status="paused"),
            DEFAULT_ORG_ID,
            ADMIN,
        )

        assert updated.priority == 9
        assert updated.status == "paused"
        assert updated.name == "Standard recovery"
        entry = (
            db_session.query(AuditLog)
            .filter(AuditLog.action == "DUNNING_CAMPAIGN_UPDATED")
            .one()
        )
        assert entry.details["changes"] == {
            "priority": {"old": 5, "new": 9},
            "status": {"old": "active", "new": "paused"},
        }

    def test_schedule_replaced_as_a_whole(self, db_session):
        service = CampaignService(db_session)
        campaign = service.create_campaign(_create_payload(), DEFAULT_ORG_ID, ADMIN)

        service.update_campaign(
            campaign.id,
            DunningCampaignUpdate(
                retry_schedule=[{"delay_days": 2, "action": "retry_payment"}]
            ),
            DEFAULT_ORG_ID,
            ADMIN,
        )

        steps = service.repo.get_steps(campaign.id)
        assert [(s.step_number, s.delay_days) for s in steps] == [(1, 2)]

    def test_removing_email_template_breaks_email_step(self, db_session):
        service = CampaignService(db_session)
        campaign = service.create_campaign(_create_payload(), DEFAULT_ORG_ID, ADMIN)

        with pytest.raises(ValidationError):
            service.update_campaign(
                campaign.id,
                DunningCampaignUpdate(email_template=None),
                DEFAULT_ORG_ID,
                ADMIN,
            )

    def test_rename_to_existing_conflicts(self, db_session):
        service = CampaignService(db_session)
        service.create_campaign(_create_payload(name="First"), DEFAULT_ORG_ID, ADMIN)
        second = service.create_campaign(_create_payload(name="Second"), DEFAULT_ORG_ID, ADMIN)

        with pytest.raises(ConflictError):
            service.update_campaign(
                second.id, DunningCampaignUpdate(name="First"), DEFAULT_ORG_ID, ADMIN
            )

    def test_no_op_update_writes_no_audit(self, db_session):
        service = CampaignService(db_session)
        campaign = service.create_campaign(_create_payload(), DEFAULT_ORG_ID, ADMIN)

        service.update_campaign(
            campaign.id, DunningCampaignUpdate(priority=5), DEFAULT_ORG_ID, ADMIN
        )

        assert (
            db_session.query(AuditLog)
            .filter(AuditLog.action == "DUNNING_CAMPAIGN_UPDATED")
            .count()
            == 0
        )

    def test_unknown_campaign(self, db_session):
        with pytest.raises(NotFoundError):
            CampaignService(db_session).update_campaign(
                uuid.uuid4(), DunningCampaignUpdate(priority=1), DEFAULT_ORG_ID, ADMIN
            )
