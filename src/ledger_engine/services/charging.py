from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
import logging

from sqlalchemy.orm import Session

from src.config import LedgerSettings
from src.models.advertiser_transaction import TRANSACTION_TYPE_CHARGE

from .campaigns import (
    CampaignAggregator,
    CampaignRepository,
    CeleryCampaignAggregator,
    SqlCampaignRepository,
)
from .errors import (
    DuplicateRequest,
    InsufficientFunds,
    InvalidChargeRequest,
    LedgerError,
    PredicateFailed,
    TopUpFailed,
)
from .ledger import LedgerEntry, LedgerEntryDraft, LedgerStore, SqlLedgerStore
from .pricing import impression_cost, quantize_money
from .topup import TopUpCoordinator, TopUpResult, build_topup_coordinator

logger = logging.getLogger("adledger.ledger_engine.charging")


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a debit.

    A replayed key returns the same ledger outcome as the first call (amounts,
    balance, transaction id, key, campaign). ``duplicate`` and ``top_up``
    describe the current call only: a replay has duplicate=True and no top-up,
    since it moved no money.
    """

    advertiser_id: int
    charged_amount: Decimal
    new_balance: Decimal
    transaction_id: int
    idempotency_key: str
    campaign_id: int | None = None
    duplicate: bool = False
    top_up: TopUpResult | None = None

    def to_dict(self) -> dict:
        return {
            "advertiser_id": self.advertiser_id,
            "campaign_id": self.campaign_id,
            "charged_amount": str(self.charged_amount),
            "new_balance": str(self.new_balance),
            "transaction_id": self.transaction_id,
            "idempotency_key": self.idempotency_key,
            "duplicate": self.duplicate,
            "top_up": self.top_up.to_dict() if self.top_up is not None else None,
        }


class ChargeEngine:
    """Debits advertiser balances for metered delivery.

    Each call is stateless. Balance checks and debits happen inside the ledger
    store's conditional adjust; this class never writes a balance it has read.
    When the floor check fails and auto top-up is on, the top-up coordinator
    runs once and the debit is retried exactly once.
    """

    def __init__(
        self,
        ledger: LedgerStore | None = None,
        campaigns: CampaignRepository | None = None,
        topups: TopUpCoordinator | None = None,
        aggregator: CampaignAggregator | None = None,
    ) -> None:
        self._ledger = ledger or SqlLedgerStore()
        self._campaigns = campaigns or SqlCampaignRepository()
        self._topups = topups
        self._aggregator = aggregator or CeleryCampaignAggregator()

    def charge(
        self,
        session: Session,
        advertiser_id: int,
        campaign_id: int,
        impression_count: int,
        idempotency_key: str,
    ) -> ChargeResult:
        if impression_count is None or int(impression_count) <= 0:
            raise InvalidChargeRequest("impression_count must be positive")
        impression_count = int(impression_count)
        _require_key(idempotency_key)

        pricing = self._campaigns.get_pricing(session=session, campaign_id=campaign_id)
        if pricing.advertiser_id != advertiser_id:
            raise InvalidChargeRequest(
                f"campaign_id={campaign_id} does not belong to advertiser_id={advertiser_id}"
            )
        cost = impression_cost(pricing.cpm_bid, impression_count)
        logger.debug(
            "cost for campaign_id=%s: cpm=%s impressions=%s cost=%s",
            campaign_id,
            pricing.cpm_bid,
            impression_count,
            cost,
        )

        result = self._debit(
            session=session,
            advertiser_id=advertiser_id,
            cost=cost,
            entry=LedgerEntryDraft(
                transaction_type=TRANSACTION_TYPE_CHARGE,
                description=f"Ad impressions ({impression_count})",
                idempotency_key=idempotency_key,
                campaign_id=campaign_id,
                impression_count=impression_count,
            ),
        )
        if not result.duplicate:
            self._aggregator.record_charge(
                campaign_id=campaign_id,
                amount=result.charged_amount,
                impression_count=impression_count,
            )
        return result

    def charge_fee(
        self,
        session: Session,
        advertiser_id: int,
        amount: Decimal,
        description: str,
        idempotency_key: str,
        campaign_id: int | None = None,
    ) -> ChargeResult:
        """Debit a flat fee through the same conditional path as impressions."""
        _require_key(idempotency_key)
        amount = quantize_money(amount)
        if amount <= 0:
            raise InvalidChargeRequest("fee amount must be positive")
        return self._debit(
            session=session,
            advertiser_id=advertiser_id,
            cost=amount,
            entry=LedgerEntryDraft(
                transaction_type=TRANSACTION_TYPE_CHARGE,
                description=description,
                idempotency_key=idempotency_key,
                campaign_id=campaign_id,
            ),
        )

    def _debit(
        self,
        session: Session,
        advertiser_id: int,
        cost: Decimal,
        entry: LedgerEntryDraft,
    ) -> ChargeResult:
        existing = self._ledger.find_by_idempotency_key(
            session=session,
            advertiser_id=advertiser_id,
            idempotency_key=entry.idempotency_key,
        )
        if existing is not None:
            return self._replay(existing)

        top_up = None
        try:
            committed, duplicate = self._adjust(session, advertiser_id, cost, entry)
        except PredicateFailed:
            account = self._ledger.get_account(session=session, advertiser_id=advertiser_id)
            if not account.auto_topup_enabled:
                raise InsufficientFunds(advertiser_id, cost)
            if self._topups is None:
                raise TopUpFailed(advertiser_id, "no payment gateway configured")

            logger.info(
                "balance %s below charge %s for advertiser_id=%s; triggering auto top-up",
                account.balance,
                cost,
                advertiser_id,
            )
            top_up = self._topups.top_up(session=session, advertiser_id=advertiser_id)
            try:
                committed, duplicate = self._adjust(session, advertiser_id, cost, entry)
            except PredicateFailed as exc:
                raise InsufficientFunds(
                    advertiser_id,
                    cost,
                    message=(
                        f"advertiser_id={advertiser_id} still cannot cover {cost} "
                        "after auto top-up"
                    ),
                ) from exc

        if duplicate:
            return self._replay(committed)

        logger.info(
            "charged %s to advertiser_id=%s key=%s, balance=%s",
            cost,
            advertiser_id,
            entry.idempotency_key,
            committed.balance_after,
        )
        self._warn_if_low(session, advertiser_id, committed.balance_after)
        return ChargeResult(
            advertiser_id=advertiser_id,
            charged_amount=-committed.amount,
            new_balance=committed.balance_after,
            transaction_id=committed.transaction_id,
            idempotency_key=committed.idempotency_key,
            campaign_id=committed.campaign_id,
            top_up=top_up,
        )

    def _adjust(
        self,
        session: Session,
        advertiser_id: int,
        cost: Decimal,
        entry: LedgerEntryDraft,
    ) -> tuple[LedgerEntry, bool]:
        try:
            committed = self._ledger.conditional_adjust(
                session=session,
                advertiser_id=advertiser_id,
                delta=-cost,
                entry=entry,
                floor=cost,
            )
        except DuplicateRequest as dup:
            # A concurrent retry with the same key won the insert.
            return dup.existing, True
        return committed, False

    def _replay(self, existing: LedgerEntry) -> ChargeResult:
        if existing.transaction_type != TRANSACTION_TYPE_CHARGE:
            raise InvalidChargeRequest(
                f"idempotency_key={existing.idempotency_key} already used by a "
                f"{existing.transaction_type} transaction"
            )
        logger.info(
            "idempotency_key=%s already charged as transaction_id=%s",
            existing.idempotency_key,
            existing.transaction_id,
        )
        return ChargeResult(
            advertiser_id=existing.advertiser_id,
            charged_amount=-existing.amount,
            new_balance=existing.balance_after,
            transaction_id=existing.transaction_id,
            idempotency_key=existing.idempotency_key,
            campaign_id=existing.campaign_id,
            duplicate=True,
        )

    def _warn_if_low(self, session: Session, advertiser_id: int, balance: Decimal) -> None:
        # Runs after the debit committed; a failed read here must not fail the charge.
        try:
            account = self._ledger.get_account(session=session, advertiser_id=advertiser_id)
        except LedgerError:
            logger.debug("skipping low-balance check for advertiser_id=%s", advertiser_id)
            return
        if account.auto_topup_enabled and balance < account.auto_topup_threshold:
            logger.warning(
                "advertiser_id=%s balance %s below auto top-up threshold %s; "
                "top-up will run on the next insufficient charge",
                advertiser_id,
                balance,
                account.auto_topup_threshold,
            )


def _require_key(idempotency_key: str) -> None:
    if not idempotency_key or not str(idempotency_key).strip():
        raise InvalidChargeRequest("idempotency_key is required")


def build_charge_engine(settings: LedgerSettings | None = None) -> ChargeEngine:
    """Wire the production engine; top-ups are off when no Stripe key is configured."""
    return ChargeEngine(topups=build_topup_coordinator(settings))
