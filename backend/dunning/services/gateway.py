"""Payment gateway abstraction used to re-charge failed payments.

The engine never decides whether a charge succeeds; it asks a GatewayAdapter.
Declines come back as a ``ChargeResult`` with ``success=False``; infrastructure
problems raise ``TransientInfraError``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from dunning.core.config import settings
from dunning.core.exceptions import GatewayDeclineError, TransientInfraError

logger = logging.getLogger(__name__)


@dataclass
class ChargeResult:
    """Outcome of one charge attempt."""

    success: bool
    payment_id: str | None = None
    failure_reason: str | None = None
    error_code: str | None = None


@dataclass
class RefundResult:
    success: bool
    refund_id: str | None = None
    failure_reason: str | None = None


class GatewayAdapter(ABC):
    """Abstract base class for payment gateways."""

    name: str = "gateway"

    @abstractmethod
    async def charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        """Charge a saved payment method off-session."""
        pass  # pragma: no cover

    @abstractmethod
    async def refund(
        self,
        payment_reference: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, Any] | None = None,
    ) -> RefundResult:
        """Refund part of a previous charge."""
        pass  # pragma: no cover


def _to_minor_units(amount: Decimal) -> int:
    # Stripe uses the smallest currency unit
    return int((amount * 100).to_integral_value())


class StripeGateway(GatewayAdapter):
    """Stripe implementation using off-session PaymentIntents."""

    name = "stripe"

    def __init__(self, api_key: str | None = None):
        self.api_key = api_key or settings.stripe_api_key
        self._stripe: Any = None

    @property
    def stripe(self) -> Any:
        """Lazy-load stripe module."""
        if self._stripe is None:
            try:
                import stripe

                stripe.api_key = self.api_key
                self._stripe = stripe
            except ImportError as e:
                raise ImportError("stripe package not installed. Run: pip install stripe") from e
        return self._stripe

    def _create_payment_intent(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, Any],
    ) -> ChargeResult:
        params: dict[str, Any] = {
            "amount": _to_minor_units(amount),
            "currency": currency.lower(),
            "payment_method": payment_method_id,
            "confirm": True,
            "off_session": True,
            "metadata": {k: str(v) for k, v in metadata.items() if v is not None},
        }
        provider_customer = metadata.get("provider_customer_id")
        if provider_customer:
            params["customer"] = provider_customer

        try:
            intent = self.stripe.PaymentIntent.create(**params)
        except self.stripe.CardError as exc:
            raise GatewayDeclineError(
                str(exc.user_message or exc),
                failure_reason=getattr(exc, "code", None) or "card_declined",
                error_code=getattr(exc, "decline_code", None),
            ) from exc
        except self.stripe.StripeError as exc:
            raise TransientInfraError(f"Stripe request failed: {exc}") from exc

        if intent.status == "succeeded":
            return ChargeResult(success=True, payment_id=intent.id)

        last_error = getattr(intent, "last_payment_error", None) or {}
        return ChargeResult(
            success=False,
            payment_id=intent.id,
            failure_reason=last_error.get("code") or intent.status,
            error_code=last_error.get("decline_code"),
        )

    async def charge(
        self,
        customer_id: str,
        payment_method_id: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, Any] | None = None,
    ) -> ChargeResult:
        try:
            return await asyncio.to_thread(
                self._create_payment_intent,
                customer_id,
                payment_method_id,
                amount,
                currency,
                {"customer_id": customer_id, **(metadata or {})},
            )
        except GatewayDeclineError as decline:
            logger.info(
                "Stripe declined charge for customer %s: %s",
                customer_id,
                decline.failure_reason,
            )
            return ChargeResult(
                success=False,
                failure_reason=decline.failure_reason,
                error_code=decline.error_code,
            )

    def _create_refund(self, payment_reference: str, amount: Decimal) -> RefundResult:
        try:
            refund = self.stripe.Refund.create(
                payment_intent=payment_reference,
                amount=_to_minor_units(amount),
            )
        except self.stripe.InvalidRequestError as exc:
            return RefundResult(success=False, failure_reason=str(exc))
        except self.stripe.StripeError as exc:
            raise TransientInfraError(f"Stripe refund failed: {exc}") from exc
        return RefundResult(success=refund.status in ("succeeded", "pending"), refund_id=refund.id)

    async def refund(
        self,
        payment_reference: str,
        amount: Decimal,
        currency: str,
        metadata: dict[str, Any] | None = None,
    ) -> RefundResult:
        return await asyncio.to_thread(self._create_refund, payment_reference, amount)


def get_gateway() -> GatewayAdapter:
    """FastAPI dependency returning the configured gateway."""
    gateways: dict[str, type[GatewayAdapter]] = {
        "stripe": StripeGateway,
    }
    gateway_class = gateways.get(settings.PAYMENT_GATEWAY)
    if not gateway_class:
        raise ValueError(f"Unsupported payment gateway: {settings.PAYMENT_GATEWAY}")
    return gateway_class()
