from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging

from sqlalchemy.orm import Session

from src.models.advertiser_transaction import (
    TRANSACTION_TYPE_ADJUSTMENT,
    TRANSACTION_TYPE_CHARGE,
    TRANSACTION_TYPE_VALUES,
)

from .ledger import LedgerEntry, LedgerStore, SqlLedgerStore

logger = logging.getLogger("adledger.ledger_engine.reconciliation")

ZERO = Decimal("0")


@dataclass(frozen=True)
class LedgerReconciliationResult:
    advertiser_id: int
    transactions_processed: int
    stored_balance: Decimal
    ledger_balance: Decimal
    balance_drift: Decimal
    chain_breaks: int
    invalid_entries: int = 0

    @property
    def consistent(self) -> bool:
        return self.balance_drift == 0 and self.chain_breaks == 0 and self.invalid_entries == 0

    def to_dict(self) -> dict:
        return {
            "advertiser_id": self.advertiser_id,
            "transactions_processed": self.transactions_processed,
            "stored_balance": str(self.stored_balance),
            "ledger_balance": str(self.ledger_balance),
            "balance_drift": str(self.balance_drift),
            "chain_breaks": self.chain_breaks,
            "invalid_entries": self.invalid_entries,
            "consistent": self.consistent,
        }


class LedgerReconciliationService:
    """Replays advertiser ledgers and reports drift against the cached balance.

    Report only: a drifted balance is surfaced, never rewritten, because every
    balance write must go through the ledger store's conditional adjust.
    """

    def __init__(self, ledger: LedgerStore | None = None) -> None:
        self._ledger = ledger or SqlLedgerStore()

    def reconcile_account(
        self,
        session: Session,
        advertiser_id: int,
    ) -> LedgerReconciliationResult:
        account = self._ledger.get_account(session=session, advertiser_id=advertiser_id)
        entries = self._ledger.list_transactions(session=session, advertiser_id=advertiser_id)
        ledger_balance, chain_breaks, invalid_entries = self._replay_transactions(entries)

        result = LedgerReconciliationResult(
            advertiser_id=advertiser_id,
            transactions_processed=len(entries),
            stored_balance=account.balance,
            ledger_balance=ledger_balance,
            balance_drift=account.balance - ledger_balance,
            chain_breaks=chain_breaks,
            invalid_entries=invalid_entries,
        )
        if not result.consistent:
            logger.error(
                "ledger drift for advertiser_id=%s: stored=%s ledger=%s chain_breaks=%s "
                "invalid_entries=%s",
                advertiser_id,
                result.stored_balance,
                result.ledger_balance,
                result.chain_breaks,
                result.invalid_entries,
            )
        return result

    def reconcile_all(
        self,
        session: Session,
        advertiser_ids: list[int] | None = None,
        limit: int | None = None,
    ) -> list[LedgerReconciliationResult]:
        if advertiser_ids is None:
            advertiser_ids = self._ledger.list_advertiser_ids(session=session, limit=limit)
        return [
            self.reconcile_account(session=session, advertiser_id=advertiser_id)
            for advertiser_id in advertiser_ids
        ]

    def _replay_transactions(self, entries: list[LedgerEntry]) -> tuple[Decimal, int, int]:
        balance = ZERO
        previous_after = ZERO
        chain_breaks = 0
        invalid_entries = 0

        for entry in entries:
            problem = self._entry_problem(entry)
            if problem is not None:
                # Counted and kept in the replay; the amount did move the balance.
                invalid_entries += 1
                logger.error(
                    "invalid ledger row advertiser_id=%s transaction_id=%s: %s",
                    entry.advertiser_id,
                    entry.transaction_id,
                    problem,
                )
            balance += entry.amount
            if entry.balance_after != previous_after + entry.amount:
                chain_breaks += 1
            previous_after = entry.balance_after

        return balance, chain_breaks, invalid_entries

    def _entry_problem(self, entry: LedgerEntry) -> str | None:
        if entry.transaction_type not in TRANSACTION_TYPE_VALUES:
            return f"unsupported type={entry.transaction_type}"
        if entry.transaction_type == TRANSACTION_TYPE_CHARGE and entry.amount > 0:
            return "positive charge"
        if (
            entry.transaction_type not in {TRANSACTION_TYPE_CHARGE, TRANSACTION_TYPE_ADJUSTMENT}
            and entry.amount < 0
        ):
            return "negative credit"
        return None
