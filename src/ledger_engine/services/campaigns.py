from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol
import logging

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.models.ad_campaign import AdCampaign
from src.models.advertiser_transaction import AdvertiserTransaction, TRANSACTION_TYPE_CHARGE

from .errors import CampaignNotFound, LedgerUnavailable
from .pricing import quantize_money, to_decimal

logger = logging.getLogger("adledger.ledger_engine.campaigns")


@dataclass(frozen=True)
class CampaignPricing:
    campaign_id: int
    advertiser_id: int
    cpm_bid: Decimal


@dataclass(frozen=True)
class CampaignTotals:
    campaign_id: int
    total_spent: Decimal
    total_impressions: int
    spent_drift: Decimal
    impressions_drift: int

    def to_dict(self) -> dict:
        return {
            "campaign_id": self.campaign_id,
            "total_spent": str(self.total_spent),
            "total_impressions": self.total_impressions,
            "spent_drift": str(self.spent_drift),
            "impressions_drift": self.impressions_drift,
        }


class CampaignRepository(Protocol):
    def get_pricing(self, session: Session, campaign_id: int) -> CampaignPricing:
        raise NotImplementedError


class SqlCampaignRepository:
    def get_pricing(self, session: Session, campaign_id: int) -> CampaignPricing:
        stmt = select(AdCampaign).where(AdCampaign.campaign_id == campaign_id)
        try:
            row = session.execute(stmt).scalars().first()
        except SQLAlchemyError as exc:
            session.rollback()
            raise LedgerUnavailable(f"could not load campaign_id={campaign_id}") from exc
        if row is None:
            raise CampaignNotFound(f"Campaign not found for campaign_id={campaign_id}")
        return CampaignPricing(
            campaign_id=int(row.campaign_id),
            advertiser_id=int(row.advertiser_id),
            cpm_bid=to_decimal(row.cpm_bid),
        )


class CampaignAggregator(Protocol):
    """Fire-and-forget sink for campaign spend after a successful charge."""

    def record_charge(self, campaign_id: int, amount: Decimal, impression_count: int) -> None:
        raise NotImplementedError


class CeleryCampaignAggregator:
    """Hands campaign increments to the ledger_engine.update_campaign_totals task.

    Dispatch failures are logged and dropped; the nightly rebuild repairs the
    totals from the ledger.
    """

    def __init__(self, task=None) -> None:
        self._task = task

    def record_charge(self, campaign_id: int, amount: Decimal, impression_count: int) -> None:
        task = self._task
        if task is None:
            from src.ledger_engine.tasks.update_campaign_totals import run_update_campaign_totals

            task = run_update_campaign_totals
        try:
            # Money crosses the broker as a string.
            task.delay(campaign_id, str(amount), impression_count)
        except Exception:
            logger.exception(
                "could not enqueue campaign totals for campaign_id=%s amount=%s impressions=%s",
                campaign_id,
                amount,
                impression_count,
            )


class CampaignTotalsService:
    """Maintains the derived spend/impression counters on ad_campaigns."""

    def apply_charge(
        self,
        session: Session,
        campaign_id: int,
        amount: Decimal,
        impression_count: int,
    ) -> None:
        stmt = (
            update(AdCampaign)
            .where(AdCampaign.campaign_id == campaign_id)
            .values(
                total_spent=AdCampaign.total_spent + quantize_money(amount),
                total_impressions=AdCampaign.total_impressions + impression_count,
            )
            .execution_options(synchronize_session=False)
        )
        result = session.execute(stmt)
        if result.rowcount == 0:
            session.rollback()
            raise CampaignNotFound(f"Campaign not found for campaign_id={campaign_id}")
        session.commit()

    def rebuild_totals(self, session: Session, campaign_id: int) -> CampaignTotals:
        campaign = session.execute(
            select(AdCampaign).where(AdCampaign.campaign_id == campaign_id)
        ).scalars().first()
        if campaign is None:
            raise CampaignNotFound(f"Campaign not found for campaign_id={campaign_id}")

        stmt = (
            select(
                func.coalesce(func.sum(AdvertiserTransaction.amount), 0),
                func.coalesce(func.sum(AdvertiserTransaction.impression_count), 0),
            )
            .where(AdvertiserTransaction.campaign_id == campaign_id)
            .where(AdvertiserTransaction.transaction_type == TRANSACTION_TYPE_CHARGE)
            .where(AdvertiserTransaction.impression_count.is_not(None))
        )
        signed_amount, impressions = session.execute(stmt).one()
        total_spent = quantize_money(0 - to_decimal(signed_amount))
        total_impressions = int(impressions)

        stored_spent = quantize_money(campaign.total_spent or 0)
        stored_impressions = int(campaign.total_impressions or 0)
        campaign.total_spent = total_spent
        campaign.total_impressions = total_impressions
        session.commit()

        return CampaignTotals(
            campaign_id=campaign_id,
            total_spent=total_spent,
            total_impressions=total_impressions,
            spent_drift=stored_spent - total_spent,
            impressions_drift=stored_impressions - total_impressions,
        )

    def rebuild_all(self, session: Session, limit: int | None = None) -> list[CampaignTotals]:
        stmt = select(AdCampaign.campaign_id).order_by(AdCampaign.campaign_id)
        if limit is not None:
            stmt = stmt.limit(limit)
        campaign_ids = [int(campaign_id) for campaign_id in session.execute(stmt).scalars().all()]
        results = [
            self.rebuild_totals(session=session, campaign_id=campaign_id)
            for campaign_id in campaign_ids
        ]
        drifted = [result for result in results if result.spent_drift or result.impressions_drift]
        if drifted:
            logger.warning(
                "repaired totals for %s of %s campaigns",
                len(drifted),
                len(results),
            )
        return results
