"""Tests for bulk retry - batching, per-item isolation and idempotence."""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, patch

import pytest

from dunning.core.auth import SYSTEM_OPERATOR
from dunning.core.exceptions import NotFoundError, TransientInfraError, ValidationError
from dunning.models.audit_log import AuditLog
from dunning.repositories.failed_payment_repository import FailedPaymentRepository
from dunning.services.backoff import BackoffPolicy
from dunning.services.gateway import ChargeResult
from dunning.services.retry_service import RecoveryService
from tests.conftest import (
    DEFAULT_ORG_ID,
    StubDispatcher,
    StubGateway,
    YieldingGateway,
    make_customer,
    make_failed_payment,
)


def _payments(db_session, count: int) -> list:
    customer = make_customer(db_session)
    return [
        make_failed_payment(db_session, customer, amount=Decimal("10.00")) for _ in range(count)
    ]


def _service(db_session, gateway) -> RecoveryService:
    return RecoveryService(db_session, gateway, StubDispatcher(), BackoffPolicy(max_jitter=0))


class TestScenarioC:
    """25 ids in batches of 10; the gateway declines ids 11-15."""

    @pytest.mark.asyncio
    async def test_partial_failure_is_isolated(self, db_session):
        payments = _payments(db_session, 25)
        ids = [p.id for p in payments]
        failing = {str(pid) for pid in ids[10:15]}
        gateway = StubGateway(fail_ids=failing, failure_reason="insufficient_funds")

        result = await _service(db_session, gateway).bulk_retry(
            ids, DEFAULT_ORG_ID, SYSTEM_OPERATOR, batch_size=10, delay_between_batches=0
        )

        summary = result["summary"]
        assert summary["total"] == 25
        assert summary["successful"] == 20
        assert summary["failed"] == 5
        assert summary["skipped"] == 0
        assert summary["batches"] == 3
        assert summary["success_rate"] == 80.0
        assert summary["total_recovered_amount"] == Decimal("200.00")
        assert result["errors"] == []

        by_id = {r["payment_id"]: r for r in result["results"]}
        assert [by_id[pid]["batch"] for pid in ids] == [1] * 10 + [2] * 10 + [3] * 5
        for pid in ids[10:15]:
            assert by_id[pid]["success"] is False
            assert by_id[pid]["failure_reason"] == "insufficient_funds"
            assert by_id[pid]["status"] == "retrying"
        for payment in payments[:10] + payments[15:]:
            db_session.refresh(payment)
            assert payment.status == "recovered"
            assert payment.recovery_method == "bulk_retry"

    @pytest.mark.asyncio
    async def test_interleaved_batches_keep_history_consistent(self, db_session):
        payments = _payments(db_session, 25)
        ids = [p.id for p in payments]
        failing = {str(pid) for pid in ids[10:15]}
        gateway = YieldingGateway(fail_ids=failing, failure_reason="insufficient_funds")
        repo = FailedPaymentRepository(db_session)

        result = await _service(db_session, gateway).bulk_retry(
            ids, DEFAULT_ORG_ID, SYSTEM_OPERATOR, batch_size=10, delay_between_batches=0
        )

        assert result["summary"]["successful"] == 20
        assert result["summary"]["failed"] == 5
        assert result["errors"] == []
        charged = [c["metadata"]["failed_payment_id"] for c in gateway.charges]
        assert sorted(charged) == sorted(str(pid) for pid in ids)
        for payment in payments:
            db_session.refresh(payment)
            assert len(repo.get_attempts(payment.id)) == payment.retry_attempts == 1
            assert payment.locked_until is None

    @pytest.mark.asyncio
    async def test_delay_between_batches(self, db_session):
        payments = _payments(db_session, 5)

        with patch("dunning.services.retry_service.asyncio.sleep", new_callable=AsyncMock) as sleep:
            await _service(db_session, StubGateway()).bulk_retry(
                [p.id for p in payments],
                DEFAULT_ORG_ID,
                SYSTEM_OPERATOR,
                batch_size=2,
                delay_between_batches=1.5,
            )

        # No pause after the last batch
        assert sleep.await_count == 2
        sleep.assert_awaited_with(1.5)


class TestIdempotence:
    @pytest.mark.asyncio
    async def test_second_run_skips_terminal_records(self, db_session):
        payments = _payments(db_session, 4)
        ids = [p.id for p in payments]
        gateway = StubGateway()
        service = _service(db_session, gateway)

        await service.bulk_retry(ids, DEFAULT_ORG_ID, SYSTEM_OPERATOR, delay_between_batches=0)
        second = await service.bulk_retry(
            ids, DEFAULT_ORG_ID, SYSTEM_OPERATOR, delay_between_batches=0
        )

        assert len(gateway.charges) == 4
        assert second["summary"]["successful"] == 0
        assert second["summary"]["skipped"] == 4
        assert {e["code"] for e in second["errors"]} == {"terminal_policy_violation"}
        assert all(r["status"] == "recovered" for r in second["results"])

    @pytest.mark.asyncio
    async def test_duplicate_ids_are_charged_once(self, db_session):
        payment = _payments(db_session, 1)[0]
        gateway = StubGateway()

        result = await _service(db_session, gateway).bulk_retry(
            [payment.id, payment.id], DEFAULT_ORG_ID, SYSTEM_OPERATOR, delay_between_batches=0
        )

        assert result["summary"]["total"] == 1
        assert len(gateway.charges) == 1


class TestItemErrors:
    @pytest.mark.asyncio
    async def test_unknown_id_reported_not_raised(self, db_session):
        payment = _payments(db_session, 1)[0]
        missing = uuid.uuid4()

        result = await _service(db_session, StubGateway()).bulk_retry(
            [payment.id, missing], DEFAULT_ORG_ID, SYSTEM_OPERATOR, delay_between_batches=0
        )

        assert result["summary"]["successful"] == 1
        assert result["summary"]["failed"] == 1
        assert result["errors"] == [
            {
                "payment_id": missing,
                "code": "not_found",
                "message": f"Failed payment {missing} not found",
            }
        ]

    @pytest.mark.asyncio
    async def test_gateway_outage_is_isolated(self, db_session):
        payments = _payments(db_session, 2)
        gateway = StubGateway()
        outage = str(payments[0].id)
        original = gateway.charge

        async def flaky_charge(*args, **kwargs) -> ChargeResult:  # type: ignore[no-untyped-def]
            if args[4]["failed_payment_id"] == outage:
                raise TransientInfraError("gateway timeout")
            return await original(*args, **kwargs)

        gateway.charge = flaky_charge  # type: ignore[method-assign]

        result = await _service(db_session, gateway).bulk_retry(
            [p.id for p in payments], DEFAULT_ORG_ID, SYSTEM_OPERATOR, delay_between_batches=0
        )

        assert result["summary"]["successful"] == 1
        assert result["errors"][0]["code"] == "transient_infra_error"
        db_session.refresh(payments[0])
        assert payments[0].status == "pending"
        assert payments[0].retry_attempts == 0
        assert payments[0].locked_until is None


class TestValidation:
    @pytest.mark.asyncio
    async def test_batch_size_bounds(self, db_session):
        payment = _payments(db_session, 1)[0]
        with pytest.raises(ValidationError):
            await _service(db_session, StubGateway()).bulk_retry(
                [payment.id], DEFAULT_ORG_ID, SYSTEM_OPERATOR, batch_size=51
            )

    @pytest.mark.asyncio
    async def test_unknown_campaign(self, db_session):
        payment = _payments(db_session, 1)[0]
        with pytest.raises(NotFoundError):
            await _service(db_session, StubGateway()).bulk_retry(
                [payment.id], DEFAULT_ORG_ID, SYSTEM_OPERATOR, campaign_id=uuid.uuid4()
            )

    @pytest.mark.asyncio
    async def test_single_audit_entry(self, db_session):
        payments = _payments(db_session, 3)

        await _service(db_session, StubGateway()).bulk_retry(
            [p.id for p in payments],
            DEFAULT_ORG_ID,
            SYSTEM_OPERATOR,
            delay_between_batches=0,
            reason="month end",
        )

        entries = db_session.query(AuditLog).all()
        assert [e.action for e in entries] == ["BULK_PAYMENT_RETRY"]
        assert entries[0].details["successful_retries"] == 3
        assert entries[0].details["reason"] == "month end"
