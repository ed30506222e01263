from __future__ import annotations

from decimal import Decimal
import threading

import pytest

from src.ledger_engine.services.charging import ChargeEngine
from src.ledger_engine.services.errors import (
    CampaignNotFound,
    InsufficientFunds,
    InvalidChargeRequest,
    TopUpFailed,
)
from src.ledger_engine.services.ledger import SqlLedgerStore
from src.ledger_engine.services.reconciliation import LedgerReconciliationService
from src.ledger_engine.services.topup import TopUpCoordinator


def _engine(aggregator, gateway=None, clock=None) -> ChargeEngine:
    topups = None
    if gateway is not None:
        topups = TopUpCoordinator(gateway=gateway, clock=clock)
    return ChargeEngine(topups=topups, aggregator=aggregator)


def test_charge_debits_cost_and_reports_campaign(
    session, make_advertiser, make_campaign, aggregator
) -> None:
    advertiser_id = make_advertiser(balance="20.00")
    campaign_id = make_campaign(advertiser_id, cpm_bid="15.00")

    result = _engine(aggregator).charge(
        session=session,
        advertiser_id=advertiser_id,
        campaign_id=campaign_id,
        impression_count=1000,
        idempotency_key="batch-1",
    )

    assert result.charged_amount == Decimal("15.0000")
    assert result.new_balance == Decimal("5.0000")
    assert result.duplicate is False
    assert result.top_up is None
    assert aggregator.calls == [(campaign_id, Decimal("15.0000"), 1000)]

    entries = SqlLedgerStore().list_transactions(session=session, advertiser_id=advertiser_id)
    assert len(entries) == 1
    assert entries[0].transaction_type == "charge"
    assert entries[0].amount == Decimal("-15.0000")
    assert entries[0].impression_count == 1000
    assert entries[0].campaign_id == campaign_id


def test_insufficient_funds_without_auto_topup_leaves_balance(
    session, make_advertiser, make_campaign, aggregator
) -> None:
    advertiser_id = make_advertiser(balance="10.00")
    campaign_id = make_campaign(advertiser_id, cpm_bid="15.00")

    with pytest.raises(InsufficientFunds) as exc_info:
        _engine(aggregator).charge(
            session=session,
            advertiser_id=advertiser_id,
            campaign_id=campaign_id,
            impression_count=1000,
            idempotency_key="batch-1",
        )

    assert exc_info.value.required == Decimal("15.0000")
    store = SqlLedgerStore()
    assert store.get_account(session=session, advertiser_id=advertiser_id).balance == Decimal("10")
    assert store.list_transactions(session=session, advertiser_id=advertiser_id) == []
    assert aggregator.calls == []


def test_auto_topup_then_charge(
    session, make_advertiser, make_campaign, aggregator, gateway, clock
) -> None:
    advertiser_id = make_advertiser(
        balance="5.00",
        auto_topup_enabled=True,
        auto_topup_threshold="10.00",
        auto_topup_amount="50.00",
        payment_method_ref="pm_card_visa",
    )
    campaign_id = make_campaign(advertiser_id, cpm_bid="15.00")

    result = _engine(aggregator, gateway, clock).charge(
        session=session,
        advertiser_id=advertiser_id,
        campaign_id=campaign_id,
        impression_count=1000,
        idempotency_key="batch-1",
    )

    assert result.top_up is not None
    assert result.top_up.credited_amount == Decimal("50.00")
    assert result.top_up.new_balance == Decimal("55.0000")
    assert result.new_balance == Decimal("40.0000")
    assert len(gateway.requests) == 1
    assert gateway.requests[0].amount == Decimal("50.00")
    assert gateway.requests[0].payment_method_ref == "pm_card_visa"

    entries = SqlLedgerStore().list_transactions(session=session, advertiser_id=advertiser_id)
    assert [(entry.transaction_type, entry.amount, entry.balance_after) for entry in entries] == [
        ("topup", Decimal("50.0000"), Decimal("55.0000")),
        ("charge", Decimal("-15.0000"), Decimal("40.0000")),
    ]


def test_second_shortfall_in_same_window_does_not_recharge_card(
    session, make_advertiser, make_campaign, aggregator, gateway, clock
) -> None:
    advertiser_id = make_advertiser(
        balance="5.00",
        auto_topup_enabled=True,
        auto_topup_amount="50.00",
        payment_method_ref="pm_card_visa",
    )
    campaign_id = make_campaign(advertiser_id, cpm_bid="15.00")
    engine = _engine(aggregator, gateway, clock)
    engine.charge(
        session=session,
        advertiser_id=advertiser_id,
        campaign_id=campaign_id,
        impression_count=1000,
        idempotency_key="batch-1",
    )

    with pytest.raises(InsufficientFunds, match="after auto top-up"):
        engine.charge(
            session=session,
            advertiser_id=advertiser_id,
            campaign_id=campaign_id,
            impression_count=3000,
            idempotency_key="batch-2",
        )

    assert len(gateway.requests) == 1
    account = SqlLedgerStore().get_account(session=session, advertiser_id=advertiser_id)
    assert account.balance == Decimal("40")


def test_declined_topup_fails_charge_without_ledger_writes(
    session, make_advertiser, make_campaign, aggregator, gateway, clock
) -> None:
    gateway.outcome = "decline"
    advertiser_id = make_advertiser(
        balance="5.00",
        auto_topup_enabled=True,
        auto_topup_amount="50.00",
        payment_method_ref="pm_card_chargeDeclined",
    )
    campaign_id = make_campaign(advertiser_id, cpm_bid="15.00")

    with pytest.raises(TopUpFailed, match="declined"):
        _engine(aggregator, gateway, clock).charge(
            session=session,
            advertiser_id=advertiser_id,
            campaign_id=campaign_id,
            impression_count=1000,
            idempotency_key="batch-1",
        )

    store = SqlLedgerStore()
    assert store.get_account(session=session, advertiser_id=advertiser_id).balance == Decimal("5")
    assert store.list_transactions(session=session, advertiser_id=advertiser_id) == []


def test_auto_topup_without_gateway_is_a_topup_failure(
    session, make_advertiser, make_campaign, aggregator
) -> None:
    advertiser_id = make_advertiser(
        balance="5.00",
        auto_topup_enabled=True,
        auto_topup_amount="50.00",
        payment_method_ref="pm_card_visa",
    )
    campaign_id = make_campaign(advertiser_id, cpm_bid="15.00")

    with pytest.raises(TopUpFailed, match="no payment gateway"):
        _engine(aggregator).charge(
            session=session,
            advertiser_id=advertiser_id,
            campaign_id=campaign_id,
            impression_count=1000,
            idempotency_key="batch-1",
        )


def test_replayed_key_returns_original_result_once(
    session, make_advertiser, make_campaign, aggregator
) -> None:
    advertiser_id = make_advertiser(balance="20.00")
    campaign_id = make_campaign(advertiser_id, cpm_bid="2.00")
    engine = _engine(aggregator)

    first = engine.charge(
        session=session,
        advertiser_id=advertiser_id,
        campaign_id=campaign_id,
        impression_count=500,
        idempotency_key="batch-1",
    )
    replay = engine.charge(
        session=session,
        advertiser_id=advertiser_id,
        campaign_id=campaign_id,
        impression_count=500,
        idempotency_key="batch-1",
    )

    assert replay.duplicate is True
    assert replay.transaction_id == first.transaction_id
    assert replay.charged_amount == first.charged_amount == Decimal("1.0000")
    assert replay.new_balance == Decimal("19.0000")
    assert len(aggregator.calls) == 1
    assert len(SqlLedgerStore().list_transactions(session=session, advertiser_id=advertiser_id)) == 1


@pytest.mark.parametrize("count", [0, -1])
def test_non_positive_impressions_are_rejected(
    session, make_advertiser, make_campaign, aggregator, count: int
) -> None:
    advertiser_id = make_advertiser(balance="20.00")
    campaign_id = make_campaign(advertiser_id)

    with pytest.raises(InvalidChargeRequest):
        _engine(aggregator).charge(
            session=session,
            advertiser_id=advertiser_id,
            campaign_id=campaign_id,
            impression_count=count,
            idempotency_key="batch-1",
        )


def test_charge_requires_key_and_owned_campaign(
    session, make_advertiser, make_campaign, aggregator
) -> None:
    owner = make_advertiser(balance="20.00")
    other = make_advertiser(balance="20.00")
    campaign_id = make_campaign(owner)
    engine = _engine(aggregator)

    with pytest.raises(InvalidChargeRequest, match="idempotency_key"):
        engine.charge(
            session=session,
            advertiser_id=owner,
            campaign_id=campaign_id,
            impression_count=10,
            idempotency_key=" ",
        )
    with pytest.raises(InvalidChargeRequest, match="does not belong"):
        engine.charge(
            session=session,
            advertiser_id=other,
            campaign_id=campaign_id,
            impression_count=10,
            idempotency_key="batch-1",
        )
    with pytest.raises(CampaignNotFound):
        engine.charge(
            session=session,
            advertiser_id=owner,
            campaign_id=campaign_id + 100,
            impression_count=10,
            idempotency_key="batch-2",
        )


def test_charge_fee_uses_the_same_debit_path(session, make_advertiser, aggregator) -> None:
    advertiser_id = make_advertiser(balance="60.00")
    engine = _engine(aggregator)

    result = engine.charge_fee(
        session=session,
        advertiser_id=advertiser_id,
        amount=Decimal("50.00"),
        description="Agent setup fee",
        idempotency_key="fee:agent_setup:1",
    )

    assert result.new_balance == Decimal("10.0000")
    assert aggregator.calls == []
    with pytest.raises(InsufficientFunds):
        engine.charge_fee(
            session=session,
            advertiser_id=advertiser_id,
            amount=Decimal("50.00"),
            description="Agent setup fee",
            idempotency_key="fee:agent_setup:2",
        )


def test_concurrent_charges_never_overdraw(
    session, session_factory, make_advertiser, make_campaign, aggregator
) -> None:
    advertiser_id = make_advertiser(balance="10.00")
    campaign_id = make_campaign(advertiser_id, cpm_bid="7.00")
    engine = _engine(aggregator)
    barrier = threading.Barrier(2)
    outcomes: list[object] = []
    lock = threading.Lock()

    def worker(key: str) -> None:
        db = session_factory()
        try:
            barrier.wait()
            try:
                outcome = engine.charge(
                    session=db,
                    advertiser_id=advertiser_id,
                    campaign_id=campaign_id,
                    impression_count=1000,
                    idempotency_key=key,
                )
            except InsufficientFunds as exc:
                outcome = exc
            with lock:
                outcomes.append(outcome)
        finally:
            db.close()

    threads = [threading.Thread(target=worker, args=(f"batch-{i}",)) for i in range(2)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    charged = [outcome for outcome in outcomes if not isinstance(outcome, Exception)]
    rejected = [outcome for outcome in outcomes if isinstance(outcome, InsufficientFunds)]
    assert len(charged) == 1
    assert len(rejected) == 1
    account = SqlLedgerStore().get_account(session=session, advertiser_id=advertiser_id)
    assert account.balance == Decimal("3")


def test_many_concurrent_charges_keep_ledger_consistent(
    session, session_factory, make_advertiser, make_campaign, aggregator, gateway
) -> None:
    advertiser_id = make_advertiser(balance="0")
    TopUpCoordinator(gateway=gateway).credit_deposit(
        session=session,
        advertiser_id=advertiser_id,
        amount=Decimal("10.00"),
        external_payment_ref="pi_seed",
    )
    campaign_id = make_campaign(advertiser_id, cpm_bid="1.00")
    engine = _engine(aggregator)
    workers = 12
    barrier = threading.Barrier(workers)
    successes: list[int] = []
    failures: list[Exception] = []
    lock = threading.Lock()

    def worker(index: int) -> None:
        db = session_factory()
        try:
            barrier.wait()
            try:
                result = engine.charge(
                    session=db,
                    advertiser_id=advertiser_id,
                    campaign_id=campaign_id,
                    impression_count=1000,
                    idempotency_key=f"batch-{index}",
                )
            except InsufficientFunds as exc:
                with lock:
                    failures.append(exc)
            else:
                with lock:
                    successes.append(result.transaction_id)
        finally:
            db.close()

    threads = [threading.Thread(target=worker, args=(index,)) for index in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(successes) == 10
    assert len(failures) == workers - 10

    reconciliation = LedgerReconciliationService().reconcile_account(
        session=session,
        advertiser_id=advertiser_id,
    )
    assert reconciliation.stored_balance == Decimal("0")
    assert reconciliation.transactions_processed == 11
    assert reconciliation.consistent is True


def test_charge_below_threshold_logs_low_balance_warning(
    session, make_advertiser, make_campaign, aggregator, gateway, clock, caplog
) -> None:
    advertiser_id = make_advertiser(
        balance="20.00",
        auto_topup_enabled=True,
        auto_topup_threshold="10.00",
        auto_topup_amount="50.00",
        payment_method_ref="pm_card_visa",
    )
    campaign_id = make_campaign(advertiser_id, cpm_bid="15.00")

    with caplog.at_level("WARNING", logger="adledger.ledger_engine.charging"):
        result = _engine(aggregator, gateway, clock).charge(
            session=session,
            advertiser_id=advertiser_id,
            campaign_id=campaign_id,
            impression_count=1000,
            idempotency_key="batch-1",
        )

    assert result.new_balance == Decimal("5.0000")
    assert result.top_up is None
    assert gateway.requests == []
    assert "below auto top-up threshold" in caplog.text


def test_replay_after_topup_returns_the_same_ledger_outcome(
    session, make_advertiser, make_campaign, aggregator, gateway, clock
) -> None:
    advertiser_id = make_advertiser(
        balance="5.00",
        auto_topup_enabled=True,
        auto_topup_threshold="10.00",
        auto_topup_amount="50.00",
        payment_method_ref="pm_card_visa",
    )
    campaign_id = make_campaign(advertiser_id, cpm_bid="15.00")
    engine = _engine(aggregator, gateway, clock)
    request = dict(
        session=session,
        advertiser_id=advertiser_id,
        campaign_id=campaign_id,
        impression_count=1000,
        idempotency_key="batch-1",
    )

    first = engine.charge(**request)
    replay = engine.charge(**request)

    ledger_fields = (
        "advertiser_id",
        "campaign_id",
        "charged_amount",
        "new_balance",
        "transaction_id",
        "idempotency_key",
    )
    first_dict, replay_dict = first.to_dict(), replay.to_dict()
    assert {name: first_dict[name] for name in ledger_fields} == {
        name: replay_dict[name] for name in ledger_fields
    }
    assert first.top_up is not None
    assert replay.top_up is None
    assert replay.duplicate is True
    assert len(gateway.requests) == 1
