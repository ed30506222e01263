from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Protocol
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from src.models.advertiser import Advertiser
from src.models.advertiser_transaction import AdvertiserTransaction

from .errors import (
    AccountInactive,
    AccountNotFound,
    DuplicateRequest,
    LedgerUnavailable,
    PredicateFailed,
)
from .pricing import quantize_money, to_decimal

logger = logging.getLogger("adledger.ledger_engine.ledger")


@dataclass(frozen=True)
class AccountState:
    """Point-in-time view of an advertiser's billing settings and balance."""
    advertiser_id: int
    company_name: str
    balance: Decimal
    auto_topup_enabled: bool
    auto_topup_threshold: Decimal
    auto_topup_amount: Decimal
    payment_customer_ref: str | None
    payment_method_ref: str | None
    is_active: bool


@dataclass(frozen=True)
class LedgerEntryDraft:
    """Transaction record written together with a balance adjustment."""
    transaction_type: str
    description: str
    idempotency_key: str
    campaign_id: int | None = None
    impression_count: int | None = None
    external_payment_ref: str | None = None


@dataclass(frozen=True)
class LedgerEntry:
    """A committed, immutable ledger transaction."""
    transaction_id: int
    advertiser_id: int
    transaction_type: str
    amount: Decimal
    balance_after: Decimal
    description: str
    idempotency_key: str
    created_at: datetime
    campaign_id: int | None = None
    impression_count: int | None = None
    external_payment_ref: str | None = None

    def to_dict(self) -> dict:
        return {
            "transaction_id": self.transaction_id,
            "advertiser_id": self.advertiser_id,
            "transaction_type": self.transaction_type,
            "amount": str(self.amount),
            "balance_after": str(self.balance_after),
            "description": self.description,
            "idempotency_key": self.idempotency_key,
            "created_at": self.created_at.isoformat(),
            "campaign_id": self.campaign_id,
            "impression_count": self.impression_count,
            "external_payment_ref": self.external_payment_ref,
        }


class LedgerStore(Protocol):
    """Persistence boundary for advertiser balances and their transaction log.

    Every balance change goes through ``conditional_adjust``, which applies the
    delta and appends the transaction in one all-or-nothing unit.
    """

    def get_account(self, session: Session, advertiser_id: int) -> AccountState:
        raise NotImplementedError

    def find_by_idempotency_key(
        self,
        session: Session,
        advertiser_id: int,
        idempotency_key: str,
    ) -> LedgerEntry | None:
        raise NotImplementedError

    def find_by_external_ref(
        self,
        session: Session,
        advertiser_id: int,
        external_payment_ref: str,
    ) -> LedgerEntry | None:
        raise NotImplementedError

    def conditional_adjust(
        self,
        session: Session,
        advertiser_id: int,
        delta: Decimal,
        entry: LedgerEntryDraft,
        floor: Decimal | None = None,
    ) -> LedgerEntry:
        raise NotImplementedError

    def list_transactions(
        self,
        session: Session,
        advertiser_id: int,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[LedgerEntry]:
        raise NotImplementedError

    def list_advertiser_ids(
        self,
        session: Session,
        limit: int | None = None,
    ) -> list[int]:
        raise NotImplementedError


class SqlLedgerStore:
    """SQLAlchemy ledger store.

    ``conditional_adjust`` issues one ``UPDATE ... WHERE balance >= :floor
    RETURNING balance``. The row lock taken by that UPDATE is held until the
    paired insert commits, so concurrent writers on one advertiser serialize
    and each sees the balance left by the previous one.
    """

    def get_account(self, session: Session, advertiser_id: int) -> AccountState:
        stmt = (
            select(Advertiser)
            .where(Advertiser.advertiser_id == advertiser_id)
            .execution_options(populate_existing=True)
        )
        try:
            row = session.execute(stmt).scalars().first()
        except SQLAlchemyError as exc:
            session.rollback()
            raise LedgerUnavailable(
                f"could not load advertiser_id={advertiser_id}"
            ) from exc
        if row is None:
            raise AccountNotFound(f"Advertiser not found for advertiser_id={advertiser_id}")
        return _to_account(row)

    def find_by_idempotency_key(
        self,
        session: Session,
        advertiser_id: int,
        idempotency_key: str,
    ) -> LedgerEntry | None:
        stmt = (
            select(AdvertiserTransaction)
            .where(AdvertiserTransaction.advertiser_id == advertiser_id)
            .where(AdvertiserTransaction.idempotency_key == idempotency_key)
        )
        return self._find_one(session, stmt, advertiser_id)

    def find_by_external_ref(
        self,
        session: Session,
        advertiser_id: int,
        external_payment_ref: str,
    ) -> LedgerEntry | None:
        stmt = (
            select(AdvertiserTransaction)
            .where(AdvertiserTransaction.advertiser_id == advertiser_id)
            .where(AdvertiserTransaction.external_payment_ref == external_payment_ref)
        )
        return self._find_one(session, stmt, advertiser_id)

    def conditional_adjust(
        self,
        session: Session,
        advertiser_id: int,
        delta: Decimal,
        entry: LedgerEntryDraft,
        floor: Decimal | None = None,
    ) -> LedgerEntry:
        delta = quantize_money(delta)
        stmt = (
            update(Advertiser)
            .where(Advertiser.advertiser_id == advertiser_id)
            .where(Advertiser.is_active.is_(True))
            .values(balance=Advertiser.balance + delta, updated_at=func.now())
            .returning(Advertiser.balance)
            .execution_options(synchronize_session=False)
        )
        if floor is not None:
            stmt = stmt.where(Advertiser.balance >= quantize_money(floor))

        try:
            new_balance = session.execute(stmt).scalar_one_or_none()
            if new_balance is None:
                session.rollback()
            else:
                row = AdvertiserTransaction(
                    advertiser_id=advertiser_id,
                    transaction_type=entry.transaction_type,
                    amount=delta,
                    balance_after=quantize_money(new_balance),
                    description=entry.description,
                    campaign_id=entry.campaign_id,
                    impression_count=entry.impression_count,
                    external_payment_ref=entry.external_payment_ref,
                    idempotency_key=entry.idempotency_key,
                    # Stamped under the row lock so created_at follows lock order.
                    created_at=datetime.now(timezone.utc),
                )
                session.add(row)
                session.flush()
                committed = _to_entry(row)
                session.commit()
                return committed
        except IntegrityError as exc:
            session.rollback()
            existing = self.find_by_idempotency_key(
                session=session,
                advertiser_id=advertiser_id,
                idempotency_key=entry.idempotency_key,
            )
            if existing is None and entry.external_payment_ref:
                existing = self.find_by_external_ref(
                    session=session,
                    advertiser_id=advertiser_id,
                    external_payment_ref=entry.external_payment_ref,
                )
            if existing is None:
                raise LedgerUnavailable(
                    f"ledger insert rejected for advertiser_id={advertiser_id}"
                ) from exc
            raise DuplicateRequest(existing) from exc
        except SQLAlchemyError as exc:
            session.rollback()
            logger.exception(
                "conditional adjust failed for advertiser_id=%s delta=%s",
                advertiser_id,
                delta,
            )
            raise LedgerUnavailable(
                f"conditional adjust failed for advertiser_id={advertiser_id}"
            ) from exc

        # No row matched: either the advertiser is gone/inactive or the floor failed.
        account = self.get_account(session=session, advertiser_id=advertiser_id)
        if not account.is_active:
            raise AccountInactive(f"advertiser_id={advertiser_id} is deactivated")
        raise PredicateFailed(
            f"balance {account.balance} below required {floor} "
            f"for advertiser_id={advertiser_id}"
        )

    def list_transactions(
        self,
        session: Session,
        advertiser_id: int,
        limit: int | None = None,
        newest_first: bool = False,
    ) -> list[LedgerEntry]:
        if newest_first:
            order = (
                AdvertiserTransaction.created_at.desc(),
                AdvertiserTransaction.transaction_id.desc(),
            )
        else:
            order = (
                AdvertiserTransaction.created_at,
                AdvertiserTransaction.transaction_id,
            )
        stmt = (
            select(AdvertiserTransaction)
            .where(AdvertiserTransaction.advertiser_id == advertiser_id)
            .order_by(*order)
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            rows = session.execute(stmt).scalars().all()
        except SQLAlchemyError as exc:
            session.rollback()
            raise LedgerUnavailable(
                f"could not list transactions for advertiser_id={advertiser_id}"
            ) from exc
        return [_to_entry(row) for row in rows]

    def list_advertiser_ids(
        self,
        session: Session,
        limit: int | None = None,
    ) -> list[int]:
        stmt = select(Advertiser.advertiser_id).order_by(Advertiser.advertiser_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        return [int(advertiser_id) for advertiser_id in session.execute(stmt).scalars().all()]

    def _find_one(self, session: Session, stmt, advertiser_id: int) -> LedgerEntry | None:
        try:
            row = session.execute(stmt).scalars().first()
        except SQLAlchemyError as exc:
            session.rollback()
            raise LedgerUnavailable(
                f"transaction lookup failed for advertiser_id={advertiser_id}"
            ) from exc
        return _to_entry(row) if row is not None else None


def _to_account(row: Advertiser) -> AccountState:
    return AccountState(
        advertiser_id=int(row.advertiser_id),
        company_name=row.company_name,
        balance=to_decimal(row.balance),
        auto_topup_enabled=bool(row.auto_topup_enabled),
        auto_topup_threshold=to_decimal(row.auto_topup_threshold),
        auto_topup_amount=to_decimal(row.auto_topup_amount),
        payment_customer_ref=row.payment_customer_ref,
        payment_method_ref=row.payment_method_ref,
        is_active=bool(row.is_active),
    )


def _to_entry(row: AdvertiserTransaction) -> LedgerEntry:
    return LedgerEntry(
        transaction_id=int(row.transaction_id),
        advertiser_id=int(row.advertiser_id),
        transaction_type=row.transaction_type,
        amount=to_decimal(row.amount),
        balance_after=to_decimal(row.balance_after),
        description=row.description,
        idempotency_key=row.idempotency_key,
        created_at=row.created_at or datetime.now(timezone.utc),
        campaign_id=row.campaign_id,
        impression_count=row.impression_count,
        external_payment_ref=row.external_payment_ref,
    )
