from __future__ import annotations

from celery import shared_task

from src.api.database.database import SessionLocal
from src.ledger_engine.services.reconciliation import LedgerReconciliationService


@shared_task(name="ledger_engine.reconcile_ledgers")
def run_reconciliation(
    advertiser_id: int | None = None,
    limit: int = 500,
) -> dict:
    return reconcile_ledgers(advertiser_id=advertiser_id, limit=limit)


def reconcile_ledgers(
    advertiser_id: int | None = None,
    limit: int = 500,
) -> dict:
    service = LedgerReconciliationService()
    session = SessionLocal()
    try:
        if advertiser_id is not None:
            results = [
                service.reconcile_account(session=session, advertiser_id=advertiser_id)
            ]
        else:
            results = service.reconcile_all(session=session, limit=limit)
        return {
            "advertiser_id": advertiser_id,
            "reconciled": len(results),
            "inconsistent": sum(1 for result in results if not result.consistent),
            "results": [result.to_dict() for result in results],
        }
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()
