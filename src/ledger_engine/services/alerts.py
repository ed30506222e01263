from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from src.models.advertiser_alert import AdvertiserAlert

logger = logging.getLogger("adledger.ledger_engine.alerts")


@dataclass(frozen=True)
class AccountAlert:
    alert_id: int
    advertiser_id: int
    kind: str
    message: str
    created_at: datetime | None
    resolved_at: datetime | None = None


class AccountAlertService:
    """Records user-visible account alerts, e.g. a declined top-up card."""

    def raise_alert(
        self,
        session: Session,
        advertiser_id: int,
        kind: str,
        message: str,
    ) -> None:
        # Alerts are written after the failed money path has rolled back, in
        # their own commit, and must never mask the original error.
        try:
            session.add(
                AdvertiserAlert(
                    advertiser_id=advertiser_id,
                    kind=kind,
                    message=message,
                    created_at=datetime.now(timezone.utc),
                )
            )
            session.commit()
        except SQLAlchemyError:
            session.rollback()
            logger.exception(
                "could not record %s alert for advertiser_id=%s: %s",
                kind,
                advertiser_id,
                message,
            )
            return
        logger.warning("account alert advertiser_id=%s kind=%s: %s", advertiser_id, kind, message)

    def list_open_alerts(self, session: Session, advertiser_id: int) -> list[AccountAlert]:
        stmt = (
            select(AdvertiserAlert)
            .where(AdvertiserAlert.advertiser_id == advertiser_id)
            .where(AdvertiserAlert.resolved_at.is_(None))
            .order_by(AdvertiserAlert.created_at.desc(), AdvertiserAlert.alert_id.desc())
        )
        rows = session.execute(stmt).scalars().all()
        return [
            AccountAlert(
                alert_id=int(row.alert_id),
                advertiser_id=int(row.advertiser_id),
                kind=row.kind,
                message=row.message,
                created_at=row.created_at,
                resolved_at=row.resolved_at,
            )
            for row in rows
        ]

    def resolve_alerts(
        self,
        session: Session,
        advertiser_id: int,
        kind: str | None = None,
    ) -> int:
        stmt = (
            select(AdvertiserAlert)
            .where(AdvertiserAlert.advertiser_id == advertiser_id)
            .where(AdvertiserAlert.resolved_at.is_(None))
        )
        if kind is not None:
            stmt = stmt.where(AdvertiserAlert.kind == kind)
        rows = session.execute(stmt).scalars().all()
        now = datetime.now(timezone.utc)
        for row in rows:
            row.resolved_at = now
        session.commit()
        return len(rows)
