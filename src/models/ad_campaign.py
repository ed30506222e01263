from src.api.database.database import Base
from sqlalchemy import Column, ForeignKey, Integer, Numeric, String, TIMESTAMP, func, Index


class AdCampaign(Base):
    # Campaign totals are a derived view of the ledger; drift here is repaired
    # by CampaignTotalsService.rebuild_totals.
    __tablename__ = "ad_campaigns"
    __table_args__ = (Index("ix_ad_campaigns_advertiser_id", "advertiser_id"),)

    campaign_id = Column(Integer, primary_key=True, nullable=False)
    advertiser_id = Column(
        Integer,
        ForeignKey("advertisers.advertiser_id"),
        nullable=False,
    )
    name = Column(String, nullable=False)
    cpm_bid = Column(Numeric(12, 4), nullable=False)
    total_spent = Column(Numeric(14, 4), nullable=False, server_default="0")
    total_impressions = Column(Integer, nullable=False, server_default="0")
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
