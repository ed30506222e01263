from __future__ import annotations

from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

from src.ledger_engine.services.gateway import (
    GatewayError,
    OffSessionChargeRequest,
    PaymentDeclined,
    PaymentTimeout,
    StripePaymentGateway,
    build_stripe_gateway,
)


class _FakePaymentIntents:
    """Stands in for ``StripeClient.v1.payment_intents``."""

    def __init__(self, create=None, search=None) -> None:
        self._create = create
        self._search = search
        self.created: list[dict] = []
        self.searches: list[dict] = []

    def create(self, params, options=None):
        self.created.append({"params": params, "options": options})
        return self._create(params)

    def search(self, params, options=None):
        self.searches.append(params)
        return self._search(params)


def _request() -> OffSessionChargeRequest:
    return OffSessionChargeRequest(
        payment_method_ref="pm_card_visa",
        customer_ref="cus_123",
        amount=Decimal("50.00"),
        idempotency_key="topup:7:1767225600",
        description="Auto top-up for Acme Dental",
        metadata={"advertiser_id": "7"},
    )


def _gateway(intents: _FakePaymentIntents) -> StripePaymentGateway:
    client = SimpleNamespace(v1=SimpleNamespace(payment_intents=intents))
    return StripePaymentGateway(api_key="sk_test_123", sleep=lambda _: None, client=client)


def _raising(error: Exception):
    def _call(params):
        raise error

    return _call


def test_charge_off_session_sends_minor_units_and_idempotency_key() -> None:
    intents = _FakePaymentIntents(
        create=lambda params: SimpleNamespace(id="pi_123", status="succeeded", amount=5000)
    )

    charge = _gateway(intents).charge_off_session(_request())

    assert charge.external_payment_ref == "pi_123"
    assert charge.amount == Decimal("50.00")
    sent = intents.created[0]
    assert sent["params"]["amount"] == 5000
    assert sent["params"]["off_session"] is True
    assert sent["params"]["confirm"] is True
    assert sent["options"] == {"idempotency_key": "topup:7:1767225600"}
    assert sent["params"]["metadata"] == {
        "advertiser_id": "7",
        "idempotency_key": "topup:7:1767225600",
    }


def test_card_error_maps_to_declined() -> None:
    intents = _FakePaymentIntents(
        create=_raising(stripe.CardError("Your card was declined.", None, "card_declined"))
    )

    with pytest.raises(PaymentDeclined) as exc_info:
        _gateway(intents).charge_off_session(_request())
    assert exc_info.value.reason == "Your card was declined."


@pytest.mark.parametrize(
    "error",
    [
        stripe.APIConnectionError("read timed out"),
        stripe.RateLimitError("too many requests"),
        stripe.IdempotencyError("A request with this idempotency key is in progress"),
        stripe.APIError("internal server error", http_status=500),
    ],
)
def test_unknown_outcome_errors_map_to_timeout(error: stripe.StripeError) -> None:
    intents = _FakePaymentIntents(create=_raising(error))

    with pytest.raises(PaymentTimeout):
        _gateway(intents).charge_off_session(_request())


def test_rejected_request_is_not_reported_as_a_card_decline() -> None:
    intents = _FakePaymentIntents(
        create=_raising(stripe.InvalidRequestError("No such customer: cus_123", "customer"))
    )

    with pytest.raises(GatewayError) as exc_info:
        _gateway(intents).charge_off_session(_request())
    assert not isinstance(exc_info.value, (PaymentDeclined, PaymentTimeout))


@pytest.mark.parametrize(
    ("status", "error"),
    [("processing", PaymentTimeout), ("requires_action", PaymentDeclined)],
)
def test_non_succeeded_intent_is_not_a_charge(status: str, error: type) -> None:
    intents = _FakePaymentIntents(
        create=lambda params: SimpleNamespace(id="pi_123", status=status, amount=5000)
    )

    with pytest.raises(error):
        _gateway(intents).charge_off_session(_request())


def test_find_succeeded_charge_retries_then_returns_match() -> None:
    def _search(params):
        if len(intents.searches) == 1:
            raise stripe.APIConnectionError("reset by peer")
        return SimpleNamespace(
            data=[SimpleNamespace(id="pi_found", status="succeeded", amount=5000)]
        )

    intents = _FakePaymentIntents(search=_search)

    charge = _gateway(intents).find_succeeded_charge("topup:7:1767225600")

    assert charge is not None
    assert charge.external_payment_ref == "pi_found"
    assert len(intents.searches) == 2
    assert "topup:7:1767225600" in intents.searches[0]["query"]


def test_find_succeeded_charge_returns_none_when_lookup_keeps_failing() -> None:
    intents = _FakePaymentIntents(search=_raising(stripe.APIConnectionError("unreachable")))

    assert _gateway(intents).find_succeeded_charge("topup:7:1767225600") is None


def test_gateway_requires_api_key() -> None:
    with pytest.raises(ValueError):
        StripePaymentGateway(api_key="")


def test_build_stripe_gateway_keeps_http_client_off_the_stripe_module() -> None:
    before = stripe.default_http_client

    gateway = build_stripe_gateway(api_key="sk_test_123", timeout_seconds=5)

    assert stripe.default_http_client is before
    assert isinstance(gateway._client, stripe.StripeClient)
