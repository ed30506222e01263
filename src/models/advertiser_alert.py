from src.api.database.database import Base
from sqlalchemy import Column, ForeignKey, Integer, String, TIMESTAMP, func, Index

ALERT_KIND_TOPUP_FAILED = "topup_failed"
ALERT_KIND_NO_PAYMENT_METHOD = "no_payment_method"


class AdvertiserAlert(Base):
    # Account-level notice shown to the advertiser, e.g. a declined card.
    __tablename__ = "advertiser_alerts"
    __table_args__ = (Index("ix_advertiser_alerts_advertiser_id", "advertiser_id"),)

    alert_id = Column(Integer, primary_key=True, nullable=False)
    advertiser_id = Column(
        Integer,
        ForeignKey("advertisers.advertiser_id"),
        nullable=False,
    )
    kind = Column(String, nullable=False)
    message = Column(String, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    resolved_at = Column(TIMESTAMP(timezone=True), nullable=True)
