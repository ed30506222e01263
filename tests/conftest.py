from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import os

import pytest
from sqlalchemy.orm import sessionmaker


# Prevent import-time failure in src.api.database.database during test discovery.
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")

from src.api.database.database import Base, build_engine  # noqa: E402
from src.ledger_engine.services.gateway import (  # noqa: E402
    GatewayCharge,
    OffSessionChargeRequest,
    PaymentDeclined,
    PaymentTimeout,
)
from src.models.ad_campaign import AdCampaign  # noqa: E402
from src.models.advertiser import Advertiser  # noqa: E402
from src.models.advertiser_alert import AdvertiserAlert  # noqa: E402,F401
from src.models.advertiser_transaction import AdvertiserTransaction  # noqa: E402,F401
FIXED_NOW = datetime(2026, 1, 1, 0, 2, 30, tzinfo=timezone.utc)


class FakeGateway:
    """In-memory processor; outcome is one of succeed, decline, timeout."""

    def __init__(self, outcome: str = "succeed", lookup: GatewayCharge | None = None) -> None:
        self.outcome = outcome
        self.lookup = lookup
        self.requests: list[OffSessionChargeRequest] = []
        self.lookups: list[str] = []

    def charge_off_session(self, request: OffSessionChargeRequest) -> GatewayCharge:
        self.requests.append(request)
        if self.outcome == "decline":
            raise PaymentDeclined("Your card was declined.")
        if self.outcome == "timeout":
            raise PaymentTimeout("read timed out")
        return GatewayCharge(
            external_payment_ref=f"pi_{len(self.requests)}",
            amount=request.amount,
            status="succeeded",
        )

    def find_succeeded_charge(self, idempotency_key: str) -> GatewayCharge | None:
        self.lookups.append(idempotency_key)
        return self.lookup


class RecordingAggregator:
    def __init__(self) -> None:
        self.calls: list[tuple[int, Decimal, int]] = []

    def record_charge(self, campaign_id: int, amount: Decimal, impression_count: int) -> None:
        self.calls.append((campaign_id, amount, impression_count))


@pytest.fixture
def db_engine(tmp_path):
    # File-backed so threads in concurrency tests share one database.
    engine = build_engine(f"sqlite:///{tmp_path / 'ledger.db'}")
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=db_engine)


@pytest.fixture
def session(session_factory):
    db = session_factory()
    yield db
    db.close()


def _make_advertiser(
    session,
    balance: str = "0",
    auto_topup_enabled: bool = False,
    auto_topup_threshold: str = "0",
    auto_topup_amount: str = "0",
    payment_method_ref: str | None = None,
    is_active: bool = True,
) -> int:
    advertiser = Advertiser(
        company_name="Acme Dental",
        balance=Decimal(balance),
        auto_topup_enabled=auto_topup_enabled,
        auto_topup_threshold=Decimal(auto_topup_threshold),
        auto_topup_amount=Decimal(auto_topup_amount),
        payment_customer_ref="cus_123" if payment_method_ref else None,
        payment_method_ref=payment_method_ref,
        is_active=is_active,
    )
    session.add(advertiser)
    session.commit()
    return int(advertiser.advertiser_id)


def _make_campaign(session, advertiser_id: int, cpm_bid: str = "15.00") -> int:
    campaign = AdCampaign(
        advertiser_id=advertiser_id,
        name="Spring promo",
        cpm_bid=Decimal(cpm_bid),
    )
    session.add(campaign)
    session.commit()
    return int(campaign.campaign_id)


@pytest.fixture
def make_advertiser(session):
    return lambda **kwargs: _make_advertiser(session, **kwargs)


@pytest.fixture
def make_campaign(session):
    return lambda advertiser_id, **kwargs: _make_campaign(session, advertiser_id, **kwargs)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def aggregator() -> RecordingAggregator:
    return RecordingAggregator()


@pytest.fixture
def clock():
    return lambda: FIXED_NOW
