from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Protocol
import logging
import time

import stripe

from src.utils.retry import with_backoff

from .pricing import CENT, to_decimal, to_minor_units

logger = logging.getLogger("adledger.ledger_engine.gateway")


class GatewayError(Exception):
    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class PaymentDeclined(GatewayError):
    """The card itself was refused (declined, authentication required)."""


class PaymentTimeout(GatewayError):
    """Outcome unknown: the charge may or may not have been captured."""


@dataclass(frozen=True)
class OffSessionChargeRequest:
    payment_method_ref: str
    amount: Decimal
    idempotency_key: str
    description: str
    customer_ref: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class GatewayCharge:
    external_payment_ref: str
    amount: Decimal
    status: str


class PaymentGateway(Protocol):
    """Charges a stored payment method without the cardholder present."""

    def charge_off_session(self, request: OffSessionChargeRequest) -> GatewayCharge:
        raise NotImplementedError

    def find_succeeded_charge(self, idempotency_key: str) -> GatewayCharge | None:
        raise NotImplementedError


class StripePaymentGateway(PaymentGateway):
    """Stripe-backed gateway using PaymentIntents confirmed off-session."""

    def __init__(
        self,
        api_key: str,
        currency: str = "usd",
        lookup_attempts: int = 3,
        sleep: Callable[[float], None] = time.sleep,
        http_client: stripe.HTTPClient | None = None,
        client: stripe.StripeClient | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("Stripe api_key is required")
        self._client = client or stripe.StripeClient(api_key, http_client=http_client)
        self._currency = currency
        self._lookup_attempts = lookup_attempts
        self._sleep = sleep

    def charge_off_session(self, request: OffSessionChargeRequest) -> GatewayCharge:
        metadata = dict(request.metadata)
        # Searchable key for reconciling a request whose response was lost.
        metadata["idempotency_key"] = request.idempotency_key
        try:
            intent = self._client.v1.payment_intents.create(
                params={
                    "amount": to_minor_units(request.amount),
                    "currency": self._currency,
                    "customer": request.customer_ref,
                    "payment_method": request.payment_method_ref,
                    "off_session": True,
                    "confirm": True,
                    "description": request.description,
                    "metadata": metadata,
                },
                options={"idempotency_key": request.idempotency_key},
            )
        except stripe.CardError as exc:
            raise PaymentDeclined(exc.user_message or exc.code or "card declined") from exc
        except (stripe.APIConnectionError, stripe.RateLimitError) as exc:
            raise PaymentTimeout(f"stripe unreachable: {exc}") from exc
        except (stripe.IdempotencyError, stripe.APIError) as exc:
            # 409 for a key still in flight, 5xx after the request may have landed.
            raise PaymentTimeout(f"stripe outcome unknown: {exc}") from exc
        except stripe.StripeError as exc:
            raise GatewayError(f"stripe rejected the request: {exc}") from exc

        if intent.status == "succeeded":
            return self._to_charge(intent)
        if intent.status == "processing":
            raise PaymentTimeout(f"payment {intent.id} still processing")
        raise PaymentDeclined(f"payment {intent.id} ended in status={intent.status}")

    def find_succeeded_charge(self, idempotency_key: str) -> GatewayCharge | None:
        query = (
            f"metadata['idempotency_key']:'{idempotency_key}' AND status:'succeeded'"
        )

        def _search():
            try:
                return self._client.v1.payment_intents.search(params={"query": query})
            except stripe.APIConnectionError as exc:
                raise PaymentTimeout(f"stripe unreachable: {exc}") from exc

        try:
            result = with_backoff(
                _search,
                attempts=self._lookup_attempts,
                retry_on=(PaymentTimeout,),
                sleep=self._sleep,
            )
        except (PaymentTimeout, stripe.StripeError):
            logger.exception("stripe reconciliation lookup failed for %s", idempotency_key)
            return None

        for intent in result.data:
            if intent.status == "succeeded":
                return self._to_charge(intent)
        return None

    def _to_charge(self, intent) -> GatewayCharge:
        return GatewayCharge(
            external_payment_ref=intent.id,
            amount=to_decimal(intent.amount) * CENT,
            status=intent.status,
        )


def build_stripe_gateway(
    api_key: str | None,
    currency: str = "usd",
    timeout_seconds: int = 10,
) -> StripePaymentGateway:
    if not api_key:
        raise RuntimeError("STRIPE_SECRET_KEY not set in environment or .env file!")
    return StripePaymentGateway(
        api_key=api_key,
        currency=currency,
        http_client=stripe.RequestsClient(timeout=timeout_seconds),
    )
