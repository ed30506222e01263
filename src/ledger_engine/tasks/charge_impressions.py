from __future__ import annotations

from celery import shared_task

from src.api.database.database import SessionLocal
from src.ledger_engine.services.charging import build_charge_engine
from src.ledger_engine.services.errors import LedgerError, LedgerUnavailable


@shared_task(
    name="ledger_engine.charge_impressions",
    autoretry_for=(LedgerUnavailable,),
    retry_backoff=True,
    max_retries=5,
)
def run_charge_impressions(
    advertiser_id: int,
    campaign_id: int,
    impression_count: int,
    idempotency_key: str,
) -> dict:
    # Only LedgerUnavailable is retried; the idempotency key makes the retry safe.
    return charge_impressions(
        advertiser_id=advertiser_id,
        campaign_id=campaign_id,
        impression_count=impression_count,
        idempotency_key=idempotency_key,
    )


def charge_impressions(
    advertiser_id: int,
    campaign_id: int,
    impression_count: int,
    idempotency_key: str,
) -> dict:
    engine = build_charge_engine()
    session = SessionLocal()
    try:
        result = engine.charge(
            session=session,
            advertiser_id=advertiser_id,
            campaign_id=campaign_id,
            impression_count=impression_count,
            idempotency_key=idempotency_key,
        )
        return {"status": "charged", **result.to_dict()}
    except LedgerUnavailable:
        session.rollback()
        raise
    except LedgerError as exc:
        # Terminal for this attempt; the pipeline decides whether to drop or alert.
        session.rollback()
        return {
            "status": "rejected",
            "advertiser_id": advertiser_id,
            "campaign_id": campaign_id,
            "idempotency_key": idempotency_key,
            "error": type(exc).__name__,
            "reason": getattr(exc, "reason", str(exc)),
        }
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
