"""Tests for the failed payment API endpoints."""

import uuid
from decimal import Decimal
from unittest.mock import AsyncMock, patch

from dunning.core.auth import ROLE_FINANCE, ROLE_SUPPORT, ROLE_SYSTEM
from tests.conftest import (
    DEFAULT_ORG_ID,
    auth_headers,
    make_campaign,
    make_customer,
    make_failed_payment,
)

BASE = "/v1/dunning/failed-payments/"


class TestRecordFailedPayment:
    def test_intake(self, client, customer, subscription) -> None:
        response = client.post(
            BASE,
            json={
                "customerId": str(customer.id),
                "subscriptionId": str(subscription.id),
                "amount": "49.99",
                "currency": "EUR",
                "failureReason": "card_declined",
                "originalPaymentId": "ch_123",
            },
            headers=auth_headers(ROLE_SYSTEM, actor_id="billing"),
        )

        assert response.status_code == 201
        data = response.json()
        assert data["status"] == "pending"
        assert data["amount"] == "49.99"
        assert data["currency"] == "EUR"
        assert data["retry_attempts"] == 0
        assert data["version"] == 1
        assert data["original_payment_id"] == "ch_123"

    def test_unknown_customer(self, client) -> None:
        response = client.post(BASE, json={"customer_id": str(uuid.uuid4()), "amount": "10.00"})
        assert response.status_code == 404

    def test_non_positive_amount(self, client, customer) -> None:
        response = client.post(BASE, json={"customer_id": str(customer.id), "amount": "0"})
        assert response.status_code == 400

    def test_support_cannot_record(self, client, customer) -> None:
        response = client.post(
            BASE,
            json={"customer_id": str(customer.id), "amount": "10.00"},
            headers=auth_headers(ROLE_SUPPORT),
        )
        assert response.status_code == 403


class TestListFailedPayments:
    def test_list_with_summary(self, client, db_session, customer) -> None:
        make_failed_payment(db_session, customer)
        make_failed_payment(db_session, customer, status="recovered")
        make_failed_payment(db_session, customer, status="abandoned")

        response = client.get(BASE, headers=auth_headers(ROLE_SUPPORT))

        assert response.status_code == 200
        data = response.json()
        assert len(data["failed_payments"]) == 3
        assert data["pagination"]["total"] == 3
        summary = data["summary"]
        assert summary["total_count"] == 3
        assert summary["recovered_count"] == 1
        assert summary["recovery_rate"] == 33.33
        assert summary["status_distribution"] == {"pending": 1, "recovered": 1, "abandoned": 1}

    def test_filters(self, client, db_session, customer) -> None:
        other = make_customer(db_session)
        make_failed_payment(db_session, customer, amount=Decimal("20.00"))
        make_failed_payment(db_session, customer, amount=Decimal("200.00"))
        make_failed_payment(db_session, other, amount=Decimal("300.00"), status="retrying")

        by_customer = client.get(BASE, params={"customer_id": str(customer.id), "min_amount": "100"})
        by_status = client.get(BASE, params={"status": "retrying", "include_summary": False})

        assert [p["amount"] for p in by_customer.json()["failed_payments"]] == ["200.00"]
        assert by_status.json()["summary"] is None
        assert [p["customer_id"] for p in by_status.json()["failed_payments"]] == [str(other.id)]

    def test_invalid_status_filter(self, client) -> None:
        response = client.get(BASE, params={"status": "lost"})
        assert response.status_code == 400


class TestGetFailedPayment:
    def test_detail_with_timeline(self, client, db_session, customer, subscription) -> None:
        campaign = make_campaign(db_session, name="Gentle")
        payment = make_failed_payment(
            db_session, customer, subscription, dunning_campaign_id=campaign.id
        )
        client.post(f"{BASE}{payment.id}/retry", json={"reason": "customer called"})

        response = client.get(f"{BASE}{payment.id}")

        assert response.status_code == 200
        data = response.json()
        assert data["campaign_name"] == "Gentle"
        assert data["customer"]["id"] == str(customer.id)
        assert data["subscription"]["plan_code"] == "pro"
        assert len(data["retry_history"]) == 1
        assert data["retry_history"][0]["reason"] == "customer called"
        events = [e["event"] for e in data["timeline"]]
        assert events[0] == "payment_failed"
        assert "payment_recovered" in events

    def test_not_found(self, client) -> None:
        response = client.get(f"{BASE}{uuid.uuid4()}")
        assert response.status_code == 404

    def test_other_organization_is_hidden(self, client, db_session, customer) -> None:
        payment = make_failed_payment(db_session, customer)

        response = client.get(
            f"{BASE}{payment.id}", headers={"X-Organization-Id": str(uuid.uuid4())}
        )

        assert response.status_code == 404

    def test_invalid_organization_header(self, client, db_session, customer) -> None:
        payment = make_failed_payment(db_session, customer)

        response = client.get(f"{BASE}{payment.id}", headers={"X-Organization-Id": "acme"})

        assert response.status_code == 400


class TestRetryFailedPayment:
    def test_successful_retry(self, client, db_session, customer, subscription, gateway) -> None:
        payment = make_failed_payment(db_session, customer, subscription)

        response = client.post(f"{BASE}{payment.id}/retry", headers=auth_headers(ROLE_FINANCE))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Payment retry successful"
        assert data["failed_payment"]["status"] == "recovered"
        assert data["failed_payment"]["recovered_by"] == "ops@example.com"
        assert data["payment"]["provider_payment_id"] == "pi_1"
        assert data["retry_result"] == {
            "success": True,
            "failure_reason": None,
            "error_code": None,
            "attempt": 1,
        }
        assert gateway.charges[0]["payment_method_id"] == "pm_card_visa"

    def test_declined_retry(self, client, db_session, customer, gateway) -> None:
        gateway.succeed = False
        payment = make_failed_payment(db_session, customer)

        response = client.post(f"{BASE}{payment.id}/retry", json={"amount": "20.00"})

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is False
        assert data["message"] == "Payment retry failed: card_declined"
        assert data["failed_payment"]["status"] == "retrying"
        assert data["failed_payment"]["next_retry_at"] is not None
        assert data["payment"] is None
        assert gateway.charges[0]["amount"] == 20

    def test_retry_terminal_record(self, client, db_session, customer) -> None:
        payment = make_failed_payment(db_session, customer, status="recovered")

        response = client.post(f"{BASE}{payment.id}/retry")

        assert response.status_code == 409
        assert response.json()["code"] == "terminal_policy_violation"

    def test_retry_without_payment_method(self, client, db_session, customer) -> None:
        payment = make_failed_payment(db_session, customer, payment_method_id=None)

        response = client.post(f"{BASE}{payment.id}/retry")

        assert response.status_code == 400


class TestAbandonFailedPayment:
    def test_abandon_with_refund_and_cancel(
        self, client, db_session, customer, subscription, gateway
    ) -> None:
        payment = make_failed_payment(
            db_session, customer, subscription, original_payment_id="ch_1"
        )

        response = client.post(
            f"{BASE}{payment.id}/abandon",
            json={
                "reason": "Customer disputes the charge",
                "refundPartial": True,
                "refundAmount": "10.00",
                "cancelSubscription": True,
            },
        )

        assert response.status_code == 200
        data = response.json()
        assert data["failed_payment"]["status"] == "abandoned"
        assert data["failed_payment"]["abandonment_reason"] == "Customer disputes the charge"
        assert data["actions"] == {
            "refund_processed": True,
            "refund_amount": "10.00",
            "subscription_cancelled": True,
        }
        assert gateway.refunds == [{"payment_reference": "ch_1", "amount": 10}]

    def test_declined_refund(self, client, db_session, customer, gateway) -> None:
        gateway.refund_succeeds = False
        payment = make_failed_payment(db_session, customer)

        response = client.post(
            f"{BASE}{payment.id}/abandon", json={"reason": "write off", "refund_partial": True}
        )

        assert response.status_code == 402
        assert response.json()["code"] == "gateway_decline"
        db_session.refresh(payment)
        assert payment.status == "pending"

    def test_reason_required(self, client, db_session, customer) -> None:
        payment = make_failed_payment(db_session, customer)

        response = client.post(f"{BASE}{payment.id}/abandon", json={})

        assert response.status_code == 400


class TestBulkRetry:
    def test_bulk_retry(self, client, db_session, customer, gateway) -> None:
        payments = [make_failed_payment(db_session, customer) for _ in range(3)]
        gateway.fail_ids = {str(payments[2].id)}

        with patch("dunning.services.retry_service.asyncio.sleep", new=AsyncMock()):
            response = client.post(
                f"{BASE}bulk-retry",
                json={
                    "paymentIds": [str(p.id) for p in payments],
                    "batchSize": 2,
                    "delayBetweenBatches": 0,
                },
            )

        assert response.status_code == 200
        summary = response.json()["summary"]
        assert summary["total"] == 3
        assert summary["successful"] == 2
        assert summary["failed"] == 1

    def test_batch_size_limit(self, client, db_session, customer) -> None:
        payment = make_failed_payment(db_session, customer)

        response = client.post(
            f"{BASE}bulk-retry", json={"payment_ids": [str(payment.id)], "batch_size": 51}
        )

        assert response.status_code == 400

    def test_org_scoping(self, client, db_session, customer) -> None:
        payment = make_failed_payment(db_session, customer)

        response = client.post(
            f"{BASE}bulk-retry",
            json={"payment_ids": [str(payment.id)], "delay_between_batches": 0},
            headers={"X-Organization-Id": str(uuid.uuid4())},
        )

        body = response.json()
        assert body["summary"]["skipped"] == 1
        assert body["errors"][0]["code"] == "not_found"
        db_session.refresh(payment)
        assert payment.organization_id == DEFAULT_ORG_ID
        assert payment.status == "pending"
