from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from src.models.advertiser import Advertiser

from .errors import AccountNotFound, InvalidChargeRequest
from .ledger import AccountState, LedgerStore, SqlLedgerStore
from .pricing import quantize_money


class AccountSettingsService:
    """Edits billing settings. Never touches the balance column."""

    def __init__(self, ledger: LedgerStore | None = None) -> None:
        self._ledger = ledger or SqlLedgerStore()

    def update_auto_topup(
        self,
        session: Session,
        advertiser_id: int,
        enabled: bool | None = None,
        threshold: Decimal | None = None,
        amount: Decimal | None = None,
    ) -> AccountState:
        advertiser = self._load(session, advertiser_id)
        if threshold is not None:
            threshold = quantize_money(threshold)
            if threshold < 0:
                raise InvalidChargeRequest("auto top-up threshold cannot be negative")
            advertiser.auto_topup_threshold = threshold
        if amount is not None:
            amount = quantize_money(amount)
            if amount <= 0:
                raise InvalidChargeRequest("auto top-up amount must be positive")
            advertiser.auto_topup_amount = amount
        if enabled is not None:
            if enabled and Decimal(str(advertiser.auto_topup_amount or 0)) <= 0:
                raise InvalidChargeRequest("set an auto top-up amount before enabling it")
            advertiser.auto_topup_enabled = enabled
        advertiser.updated_at = datetime.now(timezone.utc)
        session.commit()
        return self._ledger.get_account(session=session, advertiser_id=advertiser_id)

    def update_payment_method(
        self,
        session: Session,
        advertiser_id: int,
        payment_method_ref: str | None,
        payment_customer_ref: str | None = None,
    ) -> AccountState:
        advertiser = self._load(session, advertiser_id)
        advertiser.payment_method_ref = payment_method_ref
        if payment_customer_ref is not None:
            advertiser.payment_customer_ref = payment_customer_ref
        advertiser.updated_at = datetime.now(timezone.utc)
        session.commit()
        return self._ledger.get_account(session=session, advertiser_id=advertiser_id)

    def deactivate(self, session: Session, advertiser_id: int) -> AccountState:
        advertiser = self._load(session, advertiser_id)
        advertiser.is_active = False
        advertiser.updated_at = datetime.now(timezone.utc)
        session.commit()
        return self._ledger.get_account(session=session, advertiser_id=advertiser_id)

    def _load(self, session: Session, advertiser_id: int) -> Advertiser:
        stmt = select(Advertiser).where(Advertiser.advertiser_id == advertiser_id)
        advertiser = session.execute(stmt).scalars().first()
        if advertiser is None:
            raise AccountNotFound(f"Advertiser not found for advertiser_id={advertiser_id}")
        return advertiser
