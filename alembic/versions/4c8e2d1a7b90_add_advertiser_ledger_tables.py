"""add advertiser ledger tables

Revision ID: 4c8e2d1a7b90
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "4c8e2d1a7b90"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Upgrade schema."""
    op.create_table(
        "advertisers",
        sa.Column("advertiser_id", sa.Integer(), nullable=False),
        sa.Column("company_name", sa.String(), nullable=False),
        sa.Column("balance", sa.Numeric(14, 4), nullable=False, server_default="0"),
        sa.Column(
            "auto_topup_enabled",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("false"),
        ),
        sa.Column(
            "auto_topup_threshold",
            sa.Numeric(14, 4),
            nullable=False,
            server_default="0",
        ),
        sa.Column(
            "auto_topup_amount",
            sa.Numeric(14, 4),
            nullable=False,
            server_default="0",
        ),
        sa.Column("payment_customer_ref", sa.String(), nullable=True),
        sa.Column("payment_method_ref", sa.String(), nullable=True),
        sa.Column(
            "is_active",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("true"),
        ),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.CheckConstraint("balance >= 0", name="ck_advertisers_balance_non_negative"),
        sa.PrimaryKeyConstraint("advertiser_id"),
    )

    op.create_table(
        "ad_campaigns",
        sa.Column("campaign_id", sa.Integer(), nullable=False),
        sa.Column("advertiser_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("cpm_bid", sa.Numeric(12, 4), nullable=False),
        sa.Column("total_spent", sa.Numeric(14, 4), nullable=False, server_default="0"),
        sa.Column("total_impressions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.ForeignKeyConstraint(["advertiser_id"], ["advertisers.advertiser_id"]),
        sa.PrimaryKeyConstraint("campaign_id"),
    )
    op.create_index(
        "ix_ad_campaigns_advertiser_id",
        "ad_campaigns",
        ["advertiser_id"],
        unique=False,
    )

    op.create_table(
        "advertiser_transactions",
        sa.Column("transaction_id", sa.Integer(), nullable=False),
        sa.Column("advertiser_id", sa.Integer(), nullable=False),
        sa.Column("transaction_type", sa.String(), nullable=False),
        sa.Column("amount", sa.Numeric(14, 4), nullable=False),
        sa.Column("balance_after", sa.Numeric(14, 4), nullable=False),
        sa.Column("description", sa.String(), nullable=False),
        sa.Column("campaign_id", sa.Integer(), nullable=True),
        sa.Column("impression_count", sa.Integer(), nullable=True),
        sa.Column("external_payment_ref", sa.String(), nullable=True),
        sa.Column("idempotency_key", sa.String(), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.ForeignKeyConstraint(["advertiser_id"], ["advertisers.advertiser_id"]),
        sa.ForeignKeyConstraint(["campaign_id"], ["ad_campaigns.campaign_id"]),
        sa.PrimaryKeyConstraint("transaction_id"),
        sa.UniqueConstraint(
            "advertiser_id",
            "idempotency_key",
            name="uq_advertiser_transaction_idempotency_key",
        ),
        sa.UniqueConstraint(
            "external_payment_ref",
            name="uq_advertiser_transaction_external_payment_ref",
        ),
    )
    op.create_index(
        "ix_advertiser_transactions_advertiser_id",
        "advertiser_transactions",
        ["advertiser_id"],
        unique=False,
    )
    op.create_index(
        "ix_advertiser_transactions_campaign_id",
        "advertiser_transactions",
        ["campaign_id"],
        unique=False,
    )

    op.create_table(
        "advertiser_alerts",
        sa.Column("alert_id", sa.Integer(), nullable=False),
        sa.Column("advertiser_id", sa.Integer(), nullable=False),
        sa.Column("kind", sa.String(), nullable=False),
        sa.Column("message", sa.String(), nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=True,
        ),
        sa.Column("resolved_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(
            ["advertiser_id"],
            ["advertisers.advertiser_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("alert_id"),
    )
    op.create_index(
        "ix_advertiser_alerts_advertiser_id",
        "advertiser_alerts",
        ["advertiser_id"],
        unique=False,
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_index("ix_advertiser_alerts_advertiser_id", table_name="advertiser_alerts")
    op.drop_table("advertiser_alerts")
    op.drop_index(
        "ix_advertiser_transactions_campaign_id",
        table_name="advertiser_transactions",
    )
    op.drop_index(
        "ix_advertiser_transactions_advertiser_id",
        table_name="advertiser_transactions",
    )
    op.drop_table("advertiser_transactions")
    op.drop_index("ix_ad_campaigns_advertiser_id", table_name="ad_campaigns")
    op.drop_table("ad_campaigns")
    op.drop_table("advertisers")
