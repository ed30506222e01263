from src.api.database.database import Base
from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Column,
    Integer,
    Numeric,
    String,
    TIMESTAMP,
    func,
    text,
)


class Advertiser(Base):
    # Advertiser holds the prepaid balance that metered ad delivery draws down.
    # balance is a cache of the advertiser_transactions sum and only changes
    # through the ledger store's conditional adjust.
    __tablename__ = "advertisers"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_advertisers_balance_non_negative"),
    )

    advertiser_id = Column(Integer, primary_key=True, nullable=False)
    company_name = Column(String, nullable=False)
    balance = Column(Numeric(14, 4), nullable=False, server_default="0")
    auto_topup_enabled = Column(Boolean, nullable=False, server_default=text("false"))
    auto_topup_threshold = Column(Numeric(14, 4), nullable=False, server_default="0")
    auto_topup_amount = Column(Numeric(14, 4), nullable=False, server_default="0")
    payment_customer_ref = Column(String, nullable=True)
    payment_method_ref = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, server_default=text("true"))
    created_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
    updated_at = Column(TIMESTAMP(timezone=True), server_default=func.now())
