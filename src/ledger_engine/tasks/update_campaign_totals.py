from __future__ import annotations

from decimal import Decimal

from celery import shared_task
from sqlalchemy.exc import SQLAlchemyError

from src.api.database.database import SessionLocal
from src.ledger_engine.services.campaigns import CampaignTotalsService


@shared_task(
    name="ledger_engine.update_campaign_totals",
    autoretry_for=(SQLAlchemyError,),
    retry_backoff=True,
    max_retries=5,
)
def run_update_campaign_totals(
    campaign_id: int,
    amount: str | Decimal,
    impression_count: int,
) -> dict:
    return apply_campaign_charge(
        campaign_id=campaign_id,
        amount=amount,
        impression_count=impression_count,
    )


def apply_campaign_charge(
    campaign_id: int,
    amount: str | Decimal,
    impression_count: int,
) -> dict:
    amount_decimal = Decimal(str(amount))
    service = CampaignTotalsService()
    session = SessionLocal()
    try:
        service.apply_charge(
            session=session,
            campaign_id=campaign_id,
            amount=amount_decimal,
            impression_count=impression_count,
        )
        return {
            "campaign_id": campaign_id,
            "amount": str(amount_decimal),
            "impression_count": impression_count,
        }
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@shared_task(name="ledger_engine.rebuild_campaign_totals")
def run_rebuild_campaign_totals(limit: int = 1000) -> dict:
    return rebuild_campaign_totals(limit=limit)


def rebuild_campaign_totals(limit: int = 1000) -> dict:
    service = CampaignTotalsService()
    session = SessionLocal()
    try:
        results = service.rebuild_all(session=session, limit=limit)
        return {
            "rebuilt": len(results),
            "drifted": sum(
                1 for result in results if result.spent_drift or result.impressions_drift
            ),
            "results": [result.to_dict() for result in results],
        }
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
