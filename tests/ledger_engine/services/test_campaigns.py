from __future__ import annotations

from decimal import Decimal

import pytest

from src.ledger_engine.services.campaigns import (
    CampaignTotalsService,
    CeleryCampaignAggregator,
)
from src.ledger_engine.services.charging import ChargeEngine
from src.ledger_engine.services.errors import CampaignNotFound
from src.models.ad_campaign import AdCampaign


def _campaign(session, campaign_id: int) -> AdCampaign:
    session.expire_all()
    return session.get(AdCampaign, campaign_id)


def test_apply_charge_increments_totals(session, make_advertiser, make_campaign) -> None:
    advertiser_id = make_advertiser(balance="0")
    campaign_id = make_campaign(advertiser_id)
    service = CampaignTotalsService()

    service.apply_charge(session=session, campaign_id=campaign_id, amount=Decimal("1.5"), impression_count=100)
    service.apply_charge(session=session, campaign_id=campaign_id, amount=Decimal("2.25"), impression_count=150)

    campaign = _campaign(session, campaign_id)
    assert Decimal(campaign.total_spent) == Decimal("3.75")
    assert campaign.total_impressions == 250


def test_apply_charge_unknown_campaign(session) -> None:
    with pytest.raises(CampaignNotFound):
        CampaignTotalsService().apply_charge(
            session=session,
            campaign_id=999,
            amount=Decimal("1"),
            impression_count=1,
        )


def test_rebuild_totals_repairs_lost_increments(
    session, make_advertiser, make_campaign, aggregator
) -> None:
    advertiser_id = make_advertiser(balance="100.00")
    campaign_id = make_campaign(advertiser_id, cpm_bid="4.00")
    engine = ChargeEngine(aggregator=aggregator)
    for index in range(3):
        engine.charge(
            session=session,
            advertiser_id=advertiser_id,
            campaign_id=campaign_id,
            impression_count=500,
            idempotency_key=f"batch-{index}",
        )
    engine.charge_fee(
        session=session,
        advertiser_id=advertiser_id,
        amount=Decimal("10.00"),
        description="Custom phone number fee",
        idempotency_key="fee:custom_phone:1",
        campaign_id=campaign_id,
    )
    # Only one of the three increments reached the counters.
    CampaignTotalsService().apply_charge(
        session=session,
        campaign_id=campaign_id,
        amount=Decimal("2.00"),
        impression_count=500,
    )

    totals = CampaignTotalsService().rebuild_totals(session=session, campaign_id=campaign_id)

    assert totals.total_spent == Decimal("6.0000")
    assert totals.total_impressions == 1500
    assert totals.spent_drift == Decimal("-4.0000")
    assert totals.impressions_drift == -1000
    campaign = _campaign(session, campaign_id)
    assert Decimal(campaign.total_spent) == Decimal("6")


def test_celery_aggregator_enqueues_amount_as_string() -> None:
    calls: list[tuple] = []

    class _Task:
        def delay(self, *args) -> None:
            calls.append(args)

    CeleryCampaignAggregator(task=_Task()).record_charge(
        campaign_id=3,
        amount=Decimal("1.2345"),
        impression_count=10,
    )

    assert calls == [(3, "1.2345", 10)]


def test_celery_aggregator_swallows_broker_errors() -> None:
    class _Task:
        def delay(self, *args) -> None:
            raise ConnectionError("broker down")

    CeleryCampaignAggregator(task=_Task()).record_charge(
        campaign_id=3,
        amount=Decimal("1"),
        impression_count=1,
    )


def test_rebuild_all_covers_every_campaign(session, make_advertiser, make_campaign) -> None:
    advertiser_id = make_advertiser(balance="0")
    first = make_campaign(advertiser_id)
    second = make_campaign(advertiser_id)
    CampaignTotalsService().apply_charge(
        session=session,
        campaign_id=second,
        amount=Decimal("3.00"),
        impression_count=200,
    )

    results = CampaignTotalsService().rebuild_all(session=session)

    assert [result.campaign_id for result in results] == [first, second]
    assert results[0].spent_drift == Decimal("0")
    assert results[1].spent_drift == Decimal("3.0000")
    assert results[1].impressions_drift == 200
