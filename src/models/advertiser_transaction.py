from src.api.database.database import Base
from sqlalchemy import (
    Column,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    TIMESTAMP,
    UniqueConstraint,
    event,
    func,
)

TRANSACTION_TYPE_CHARGE = "charge"
TRANSACTION_TYPE_TOPUP = "topup"
TRANSACTION_TYPE_DEPOSIT = "deposit"
TRANSACTION_TYPE_REFUND = "refund"
TRANSACTION_TYPE_ADJUSTMENT = "adjustment"
TRANSACTION_TYPE_VALUES = (
    TRANSACTION_TYPE_CHARGE,
    TRANSACTION_TYPE_TOPUP,
    TRANSACTION_TYPE_DEPOSIT,
    TRANSACTION_TYPE_REFUND,
    TRANSACTION_TYPE_ADJUSTMENT,
)


class AdvertiserTransaction(Base):
    # AdvertiserTransaction is the append-only ledger; rows are never updated or deleted.
    __tablename__ = "advertiser_transactions"
    __table_args__ = (
        UniqueConstraint(
            "advertiser_id",
            "idempotency_key",
            name="uq_advertiser_transaction_idempotency_key",
        ),
        # One ledger credit per processor payment.
        UniqueConstraint(
            "external_payment_ref",
            name="uq_advertiser_transaction_external_payment_ref",
        ),
        Index("ix_advertiser_transactions_advertiser_id", "advertiser_id"),
        Index("ix_advertiser_transactions_campaign_id", "campaign_id"),
    )

    transaction_id = Column(Integer, primary_key=True, nullable=False)
    advertiser_id = Column(
        Integer,
        ForeignKey("advertisers.advertiser_id"),
        nullable=False,
    )
    transaction_type = Column(String, nullable=False)
    amount = Column(Numeric(14, 4), nullable=False)  # signed: charges negative
    balance_after = Column(Numeric(14, 4), nullable=False)
    description = Column(String, nullable=False)
    campaign_id = Column(
        Integer,
        ForeignKey("ad_campaigns.campaign_id"),
        nullable=True,
    )
    impression_count = Column(Integer, nullable=True)
    external_payment_ref = Column(String, nullable=True)
    idempotency_key = Column(String, nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())


class AppendOnlyViolation(RuntimeError):
    """Raised when code tries to change or remove a ledger row."""


@event.listens_for(AdvertiserTransaction, "before_update")
def _reject_update(mapper, connection, target) -> None:
    raise AppendOnlyViolation(
        f"advertiser_transactions row {target.transaction_id} is immutable"
    )


@event.listens_for(AdvertiserTransaction, "before_delete")
def _reject_delete(mapper, connection, target) -> None:
    raise AppendOnlyViolation(
        f"advertiser_transactions row {target.transaction_id} cannot be deleted"
    )
