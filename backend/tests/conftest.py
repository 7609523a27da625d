"""Shared test fixtures for all test modules."""

import asyncio
import contextlib
import uuid
from datetime import UTC, datetime
from decimal import Decimal
from typing import Any

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from dunning.core import database as db_module
from dunning.core.auth import create_operator_token
from dunning.core.database import Base, get_db
from dunning.main import app
from dunning.models.customer import Customer
from dunning.models.dunning_campaign import DunningCampaign
from dunning.models.failed_payment import FailedPayment
from dunning.models.organization import Organization
from dunning.models.payment_method import PaymentMethod
from dunning.models.subscription import Subscription
from dunning.repositories.dunning_campaign_repository import DunningCampaignRepository
from dunning.services.gateway import ChargeResult, GatewayAdapter, RefundResult, get_gateway
from dunning.services.lifecycle import record_locks
from dunning.services.notification_dispatcher import get_dispatcher

# Create an in-memory SQLite engine with StaticPool so all connections
# share the same database state and there are no file-locking issues.
_test_engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
_TestSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=_test_engine)

# Well-known default organization ID used across all tests
DEFAULT_ORG_ID = uuid.UUID("00000000-0000-0000-0000-000000000001")

T0 = datetime(2025, 3, 1, 12, 0, tzinfo=UTC)


def _seed_default_organization(session: Session) -> None:
    """Insert a default organization used by all tests."""
    org = session.query(Organization).filter(Organization.id == DEFAULT_ORG_ID).first()
    if org is None:
        org = Organization(
            id=DEFAULT_ORG_ID,
            name="Default Test Organization",
        )
        session.add(org)
        session.commit()


@pytest.fixture(autouse=True)
def setup_database():
    """Create tables before each test and truncate all data after.

    Patches the module-level engine and SessionLocal so all application code
    uses the in-memory test database. Clears data after each test.
    """
    # Patch module-level engine and session factory
    original_engine = db_module.engine
    original_session = db_module.SessionLocal
    db_module.engine = _test_engine
    db_module.SessionLocal = _TestSessionLocal

    Base.metadata.create_all(bind=_test_engine)

    # Seed default organization so all tests can reference it
    session = _TestSessionLocal()
    try:
        _seed_default_organization(session)
    finally:
        session.close()

    yield
    with _test_engine.connect() as conn:
        conn.execute(text("PRAGMA foreign_keys = OFF"))
        for table in reversed(Base.metadata.sorted_tables):
            with contextlib.suppress(OperationalError):
                conn.execute(table.delete())
        conn.execute(text("PRAGMA foreign_keys = ON"))
        conn.commit()

    # Restore originals
    db_module.engine = original_engine
    db_module.SessionLocal = original_session


@pytest.fixture
def default_org_id():
    """Return the default organization ID for tests."""
    return DEFAULT_ORG_ID


@pytest.fixture
def db_session():
    """Get a database session."""
    gen = get_db()
    db = next(gen)
    try:
        yield db
    finally:
        for _ in gen:
            pass


class StubGateway(GatewayAdapter):
    """Deterministic gateway: charges fail for ids in ``fail_ids``."""

    name = "stub"

    def __init__(
        self,
        succeed: bool = True,
        fail_ids: set[str] | None = None,
        failure_reason: str = "card_declined",
        refund_succeeds: bool = True,
    ):
        self.succeed = succeed
        self.fail_ids = fail_ids or set()
        self.failure_reason = failure_reason
        self.refund_succeeds = refund_succeeds
        self.charges: list[dict[str, Any]] = []
        self.refunds: list[dict[str, Any]] = []

    async def charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        metadata = metadata or {}
        self.charges.append(
            {
                "customer_id": customer_id,
                "payment_method_id": payment_method_id,
                "amount": amount,
                "currency": currency,
                "metadata": metadata,
            }
        )
        if not self.succeed or metadata.get("failed_payment_id") in self.fail_ids:
            return ChargeResult(
                success=False,
                failure_reason=self.failure_reason,
                error_code="generic_decline",
            )
        return ChargeResult(success=True, payment_id=f"pi_{len(self.charges)}")

    async def refund(
        self,
        payment_reference: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, Any] | None = None,
    ) -> RefundResult:
        self.refunds.append({"payment_reference": payment_reference, "amount": amount})
        if not self.refund_succeeds:
            return RefundResult(success=False, failure_reason="charge_already_refunded")
        return RefundResult(success=True, refund_id=f"re_{len(self.refunds)}")


class YieldingGateway(StubGateway):
    """StubGateway that gives up the event loop before answering.

    Lets concurrently gathered retries interleave the way a network call would.
    """

    async def charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        await asyncio.sleep(0)
        return await super().charge(customer_id, payment_method_id, amount, currency, metadata)


class StubDispatcher:
    """Records every notification and acknowledges with ``ack``."""

    def __init__(self, ack: bool = True):
        self.ack = ack
        self.sent: list[dict[str, Any]] = []

    async def send(
        self,
        channel: str,
        template: dict[str, Any],
        recipient: str,
        variables: dict[str, Any],
    ) -> bool:
        self.sent.append(
            {
                "channel": channel,
                "template": template,
                "recipient": recipient,
                "variables": variables,
            }
        )
        return self.ack


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def dispatcher() -> StubDispatcher:
    return StubDispatcher()


@pytest.fixture(autouse=True)
def clear_record_locks():
    yield
    record_locks._locks.clear()


def make_customer(db: Session, **overrides: Any) -> Customer:
    suffix = uuid.uuid4().hex[:8]
    defaults: dict[str, Any] = {
        "organization_id": DEFAULT_ORG_ID,
        "external_id": f"cust-{suffix}",
        "name": "Test Customer",
        "email": f"{suffix}@example.com",
        "phone": "+15550100",
    }
    defaults.update(overrides)
    customer = Customer(**defaults)
    db.add(customer)
    db.commit()
    db.refresh(customer)
    return customer


def make_subscription(db: Session, customer: Customer, **overrides: Any) -> Subscription:
    defaults: dict[str, Any] = {
        "organization_id": DEFAULT_ORG_ID,
        "external_id": f"sub-{uuid.uuid4().hex[:8]}",
        "customer_id": customer.id,
        "plan_code": "pro",
    }
    defaults.update(overrides)
    subscription = Subscription(**defaults)
    db.add(subscription)
    db.commit()
    db.refresh(subscription)
    return subscription


def make_payment_method(db: Session, customer: Customer, **overrides: Any) -> PaymentMethod:
    defaults: dict[str, Any] = {
        "organization_id": DEFAULT_ORG_ID,
        "customer_id": customer.id,
        "provider": "stripe",
        "provider_payment_method_id": f"pm_{uuid.uuid4().hex[:8]}",
        "is_default": True,
    }
    defaults.update(overrides)
    method = PaymentMethod(**defaults)
    db.add(method)
    db.commit()
    db.refresh(method)
    return method


def make_failed_payment(
    db: Session,
    customer: Customer,
    subscription: Subscription | None = None,
    **overrides: Any,
) -> FailedPayment:
    defaults: dict[str, Any] = {
        "organization_id": DEFAULT_ORG_ID,
        "customer_id": customer.id,
        "subscription_id": subscription.id if subscription else None,
        "amount": Decimal("50.00"),
        "currency": "USD",
        "failure_reason": "insufficient_funds",
        "payment_method_id": "pm_card_visa",
        "created_at": T0,
    }
    defaults.update(overrides)
    payment = FailedPayment(**defaults)
    db.add(payment)
    db.commit()
    db.refresh(payment)
    return payment


@pytest.fixture
def customer(db_session: Session) -> Customer:
    return make_customer(db_session)


@pytest.fixture
def subscription(db_session: Session, customer: Customer) -> Subscription:
    return make_subscription(db_session, customer, status="past_due", payment_status="past_due")


SCENARIO_A_STEPS = [
    {"step_number": 1, "delay_days": 1, "action": "retry_payment"},
    {"step_number": 2, "delay_days": 3, "action": "send_email"},
    {"step_number": 3, "delay_days": 7, "action": "cancel_subscription"},
]

EMAIL_TEMPLATE = {
    "subject": "Payment of {{ amount }} {{ currency }} failed",
    "html_body": "<p>Hi {{ customer_name }}, please update your card.</p>",
    "text_body": None,
}


def make_campaign(
    db: Session,
    steps: list[dict[str, Any]] | None = None,
    **overrides: Any,
) -> DunningCampaign:
    """Store an active campaign directly, bypassing the API validation."""
    fields: dict[str, Any] = {
        "name": f"Campaign {uuid.uuid4().hex[:6]}",
        "type": "email",
        "status": "active",
        "priority": 5,
        "delay_anchor": "failure",
        "trigger_conditions": {},
        "templates": {"email": EMAIL_TEMPLATE},
        "webhook_config": None,
        "tags": [],
    }
    fields.update(overrides)
    schedule = steps if steps is not None else SCENARIO_A_STEPS
    return DunningCampaignRepository(db).create(
        DEFAULT_ORG_ID,
        fields,
        [{"escalation_level": "medium", **s} for s in schedule],
    )


def auth_headers(*roles: str, actor_id: str = "ops@example.com") -> dict[str, str]:
    """Bearer header for an operator holding ``roles``."""
    return {"Authorization": f"Bearer {create_operator_token(actor_id, list(roles))}"}


@pytest.fixture
def client(gateway: StubGateway, dispatcher: StubDispatcher):
    """Test client with the gateway and dispatcher replaced by stubs."""
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    yield TestClient(app)
    app.dependency_overrides.clear()
