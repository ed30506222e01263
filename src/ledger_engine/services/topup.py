from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Callable
import logging

from sqlalchemy.orm import Session

from src.config import LedgerSettings
from src.models.advertiser_alert import ALERT_KIND_NO_PAYMENT_METHOD, ALERT_KIND_TOPUP_FAILED
from src.models.advertiser_transaction import TRANSACTION_TYPE_DEPOSIT, TRANSACTION_TYPE_TOPUP

from .alerts import AccountAlertService
from .errors import (
    AccountInactive,
    DuplicateRequest,
    InvalidChargeRequest,
    LedgerUnavailable,
    NoPaymentMethod,
    TopUpFailed,
)
from .gateway import (
    GatewayCharge,
    GatewayError,
    OffSessionChargeRequest,
    PaymentDeclined,
    PaymentGateway,
    PaymentTimeout,
    build_stripe_gateway,
)
from .ledger import LedgerEntry, LedgerEntryDraft, LedgerStore, SqlLedgerStore
from .pricing import quantize_cents, quantize_money

logger = logging.getLogger("adledger.ledger_engine.topup")

DEFAULT_TOPUP_WINDOW_SECONDS = 300


@dataclass(frozen=True)
class TopUpResult:
    advertiser_id: int
    credited_amount: Decimal
    new_balance: Decimal
    transaction_id: int
    external_payment_ref: str | None
    duplicate: bool = False

    def to_dict(self) -> dict:
        return {
            "advertiser_id": self.advertiser_id,
            "credited_amount": str(self.credited_amount),
            "new_balance": str(self.new_balance),
            "transaction_id": self.transaction_id,
            "external_payment_ref": self.external_payment_ref,
            "duplicate": self.duplicate,
        }


def topup_idempotency_key(
    advertiser_id: int,
    now: datetime,
    window_seconds: int = DEFAULT_TOPUP_WINDOW_SECONDS,
) -> str:
    """Key shared by every low-balance trigger for one advertiser in one window."""
    if window_seconds <= 0:
        raise ValueError("window_seconds must be positive")
    epoch = int(now.timestamp())
    window_start = epoch - (epoch % window_seconds)
    return f"topup:{advertiser_id}:{window_start}"


class TopUpCoordinator:
    """Replenishes an advertiser balance from the stored payment method.

    A gateway failure is terminal for the attempt: nothing is written to the
    ledger and the caller gets ``TopUpFailed`` with the processor's reason.
    Retrying inside the same coordination window reuses the gateway
    idempotency key, so the processor never captures twice for one window.
    """

    def __init__(
        self,
        gateway: PaymentGateway,
        ledger: LedgerStore | None = None,
        alerts: AccountAlertService | None = None,
        window_seconds: int = DEFAULT_TOPUP_WINDOW_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._gateway = gateway
        self._ledger = ledger or SqlLedgerStore()
        self._alerts = alerts or AccountAlertService()
        self._window_seconds = window_seconds
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def top_up(self, session: Session, advertiser_id: int) -> TopUpResult:
        account = self._ledger.get_account(session=session, advertiser_id=advertiser_id)
        if not account.is_active:
            raise AccountInactive(f"advertiser_id={advertiser_id} is deactivated")
        if not account.payment_method_ref:
            self._alerts.raise_alert(
                session=session,
                advertiser_id=advertiser_id,
                kind=ALERT_KIND_NO_PAYMENT_METHOD,
                message="Auto top-up is enabled but no payment method is on file.",
            )
            raise NoPaymentMethod(advertiser_id)

        amount = quantize_cents(account.auto_topup_amount)
        if amount <= 0:
            raise TopUpFailed(advertiser_id, "auto top-up amount is not configured")

        key = topup_idempotency_key(advertiser_id, self._clock(), self._window_seconds)
        existing = self._ledger.find_by_idempotency_key(
            session=session,
            advertiser_id=advertiser_id,
            idempotency_key=key,
        )
        if existing is not None:
            logger.info("top-up %s already credited for advertiser_id=%s", key, advertiser_id)
            return _to_result(existing, duplicate=True)

        request = OffSessionChargeRequest(
            payment_method_ref=account.payment_method_ref,
            customer_ref=account.payment_customer_ref,
            amount=amount,
            idempotency_key=key,
            description=f"Auto top-up for {account.company_name}",
            metadata={"advertiser_id": str(advertiser_id), "purpose": "topup"},
        )
        charge = self._capture(session=session, advertiser_id=advertiser_id, request=request)

        # Out-of-band record of captured money, written before the ledger credit.
        logger.warning(
            "captured top-up payment_ref=%s amount=%s advertiser_id=%s key=%s",
            charge.external_payment_ref,
            charge.amount,
            advertiser_id,
            key,
        )
        return self._credit(
            session=session,
            advertiser_id=advertiser_id,
            amount=charge.amount,
            entry=LedgerEntryDraft(
                transaction_type=TRANSACTION_TYPE_TOPUP,
                description="Automatic top-up",
                idempotency_key=key,
                external_payment_ref=charge.external_payment_ref,
            ),
        )

    def credit_deposit(
        self,
        session: Session,
        advertiser_id: int,
        amount: Decimal,
        external_payment_ref: str,
        description: str = "Retainer deposit",
    ) -> TopUpResult:
        """Credit a payment the processor already confirmed.

        Also the recovery path for a captured top-up whose ledger credit
        failed: the processor reference makes the credit idempotent.
        """
        amount = quantize_money(amount)
        if amount <= 0:
            raise InvalidChargeRequest("deposit amount must be positive")
        if not external_payment_ref:
            raise InvalidChargeRequest("deposit requires an external payment reference")

        existing = self._ledger.find_by_external_ref(
            session=session,
            advertiser_id=advertiser_id,
            external_payment_ref=external_payment_ref,
        )
        if existing is not None:
            return _to_result(existing, duplicate=True)

        return self._credit(
            session=session,
            advertiser_id=advertiser_id,
            amount=amount,
            entry=LedgerEntryDraft(
                transaction_type=TRANSACTION_TYPE_DEPOSIT,
                description=description,
                idempotency_key=f"deposit:{external_payment_ref}",
                external_payment_ref=external_payment_ref,
            ),
        )

    def _capture(
        self,
        session: Session,
        advertiser_id: int,
        request: OffSessionChargeRequest,
    ) -> GatewayCharge:
        try:
            return self._gateway.charge_off_session(request)
        except PaymentTimeout as exc:
            # Only credit a timed-out charge the processor confirms it captured.
            confirmed = self._gateway.find_succeeded_charge(request.idempotency_key)
            if confirmed is None:
                self._fail(session, advertiser_id, f"payment processor timed out: {exc.reason}")
            logger.warning(
                "top-up %s confirmed by processor lookup after timeout",
                request.idempotency_key,
            )
            return confirmed
        except PaymentDeclined as exc:
            self._fail(session, advertiser_id, exc.reason, card_declined=True)
        except GatewayError as exc:
            self._fail(session, advertiser_id, exc.reason)

    def _fail(
        self,
        session: Session,
        advertiser_id: int,
        reason: str,
        card_declined: bool = False,
    ) -> None:
        message = f"Automatic top-up failed: {reason}."
        if card_declined:
            message += " Update your payment method."
        self._alerts.raise_alert(
            session=session,
            advertiser_id=advertiser_id,
            kind=ALERT_KIND_TOPUP_FAILED,
            message=message,
        )
        raise TopUpFailed(advertiser_id, reason)

    def _credit(
        self,
        session: Session,
        advertiser_id: int,
        amount: Decimal,
        entry: LedgerEntryDraft,
    ) -> TopUpResult:
        try:
            committed = self._ledger.conditional_adjust(
                session=session,
                advertiser_id=advertiser_id,
                delta=amount,
                entry=entry,
            )
        except DuplicateRequest as dup:
            return _to_result(dup.existing, duplicate=True)
        except LedgerUnavailable:
            logger.error(
                "payment_ref=%s amount=%s captured for advertiser_id=%s but not credited; "
                "recover with credit_deposit",
                entry.external_payment_ref,
                amount,
                advertiser_id,
            )
            raise
        logger.info(
            "credited %s (%s) to advertiser_id=%s, balance=%s",
            committed.amount,
            committed.transaction_type,
            advertiser_id,
            committed.balance_after,
        )
        return _to_result(committed)


def _to_result(entry: LedgerEntry, duplicate: bool = False) -> TopUpResult:
    return TopUpResult(
        advertiser_id=entry.advertiser_id,
        credited_amount=entry.amount,
        new_balance=entry.balance_after,
        transaction_id=entry.transaction_id,
        external_payment_ref=entry.external_payment_ref,
        duplicate=duplicate,
    )


def build_topup_coordinator(settings: LedgerSettings | None = None) -> TopUpCoordinator | None:
    """Production coordinator, or None when no Stripe key is configured."""
    settings = settings or LedgerSettings.from_env()
    if not settings.stripe_secret_key:
        logger.warning("STRIPE_SECRET_KEY not set; auto top-up is disabled")
        return None
    gateway = build_stripe_gateway(
        api_key=settings.stripe_secret_key,
        currency=settings.stripe_currency,
        timeout_seconds=settings.stripe_timeout_seconds,
    )
    return TopUpCoordinator(gateway=gateway, window_seconds=settings.topup_window_seconds)
