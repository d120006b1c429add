import threading

import pytest

from ledger import (
    TRACKING_ACCOUNT_NAME,
    AssetType,
    InsufficientFunds,
    InvalidInput,
    NotFound,
    PositionState,
)


def _funded(engine, user_id, balance=1000.0):
    return engine.create_account(user_id, "Checking", "Checking", balance)


def _buy(engine, user_id, account_id, symbol="AAPL", quantity=10, price=50.0, asset_type=AssetType.STOCK):
    return engine.buy(user_id, symbol, symbol, asset_type, quantity, price, account_id)


def test_buy_debits_funding_and_credits_tracking(engine, user_id, store):
    funding = _funded(engine, user_id, 1000.0)

    position = _buy(engine, user_id, funding.id, quantity=10, price=50.0)

    state = store.read(user_id)
    assert state.find_account(funding.id).balance == 500.0
    assert state.tracking_account().balance == 500.0
    assert state.tracking_account().name == TRACKING_ACCOUNT_NAME
    assert position.quantity == 10
    assert position.price_per_share == 50.0
    assert state.find_investment(position.id) is not None


def test_second_buy_reuses_tracking_account(engine, user_id, store):
    funding = _funded(engine, user_id, 1000.0)
    _buy(engine, user_id, funding.id, quantity=2, price=100.0)
    _buy(engine, user_id, funding.id, symbol="MSFT", quantity=1, price=300.0)

    state = store.read(user_id)
    trackers = [a for a in state.accounts if a.name == TRACKING_ACCOUNT_NAME]
    assert len(trackers) == 1
    assert trackers[0].balance == 500.0


def test_buy_with_insufficient_funds_writes_nothing(engine, user_id, store):
    funding = _funded(engine, user_id, 100.0)
    before = store.read(user_id)

    with pytest.raises(InsufficientFunds):
        _buy(engine, user_id, funding.id, quantity=10, price=50.0)

    after = store.read(user_id)
    assert after == before
    assert after.tracking_account() is None
    assert after.investments == []


def test_buy_unknown_account_is_not_found(engine, user_id):
    with pytest.raises(NotFound):
        _buy(engine, user_id, "acc_missing")


def test_full_sell_closes_position(engine, user_id, store, quotes):
    funding = _funded(engine, user_id)
    position = _buy(engine, user_id, funding.id, quantity=10, price=50.0)
    quotes.prices["AAPL"] = 50.0

    result = engine.sell(user_id, position.id, 10, funding.id)

    state = store.read(user_id)
    assert result.position_state == PositionState.CLOSED
    assert result.remaining_quantity == 0
    assert state.find_investment(position.id) is None


def test_partial_sell_keeps_position_open(engine, user_id, store, quotes):
    funding = _funded(engine, user_id)
    position = _buy(engine, user_id, funding.id, quantity=10, price=50.0)
    quotes.prices["AAPL"] = 50.0

    result = engine.sell(user_id, position.id, 4, funding.id)

    state = store.read(user_id)
    assert result.position_state == PositionState.PARTIALLY_REDUCED
    assert state.find_investment(position.id).quantity == 6


def test_round_trip_at_same_price_restores_balances(engine, user_id, store, quotes):
    funding = _funded(engine, user_id, 1000.0)
    position = _buy(engine, user_id, funding.id, quantity=10, price=50.0)
    quotes.prices["AAPL"] = 50.0

    engine.sell(user_id, position.id, 10, funding.id)

    state = store.read(user_id)
    assert state.find_account(funding.id).balance == 1000.0
    assert state.tracking_account().balance == 0.0


def test_sell_removes_cost_basis_not_payout_from_tracking(engine, user_id, store, quotes):
    funding = _funded(engine, user_id, 1000.0)
    savings = engine.create_account(user_id, "Savings", "Savings", 0.0)
    position = _buy(engine, user_id, funding.id, quantity=10, price=50.0)
    quotes.prices["AAPL"] = 80.0

    result = engine.sell(user_id, position.id, 5, savings.id)

    state = store.read(user_id)
    assert result.payout == 400.0
    assert result.cost_basis_removed == 250.0
    assert result.quote.live is True
    assert state.find_account(savings.id).balance == 400.0
    assert state.tracking_account().balance == 250.0


def test_sell_falls_back_to_stored_price_when_quote_fails(engine, user_id, quotes):
    funding = _funded(engine, user_id)
    position = _buy(engine, user_id, funding.id, quantity=3, price=40.0)

    result = engine.sell(user_id, position.id, 3, funding.id)

    assert result.quote.live is False
    assert result.quote.source == "COST_BASIS"
    assert result.payout == 120.0


def test_sell_uses_last_known_price_before_cost_basis(engine, user_id, quotes):
    funding = _funded(engine, user_id, 5000.0)
    position = _buy(engine, user_id, funding.id, quantity=4, price=40.0)
    quotes.prices["AAPL"] = 45.0
    engine.value_portfolio(user_id)
    del quotes.prices["AAPL"]

    result = engine.sell(user_id, position.id, 2, funding.id)

    assert result.quote.source == "CACHED"
    assert result.quote.live is False
    assert result.payout == 90.0


def test_indian_listing_is_converted_to_usd(engine, user_id, quotes):
    funding = _funded(engine, user_id, 1000.0)
    position = _buy(engine, user_id, funding.id, symbol="TCS.NS", quantity=2, price=40.0)
    quotes.prices["TCS.NS"] = 3460.0

    result = engine.sell(user_id, position.id, 2, funding.id)

    assert result.price_per_share == pytest.approx(40.0)
    assert result.payout == 80.0


def test_cannot_sell_more_than_held(engine, user_id, store):
    funding = _funded(engine, user_id)
    position = _buy(engine, user_id, funding.id, quantity=2, price=10.0)
    before = store.read(user_id)

    with pytest.raises(InvalidInput):
        engine.sell(user_id, position.id, 3, funding.id)

    assert store.read(user_id) == before


def test_sell_requires_existing_position_and_deposit_account(engine, user_id):
    funding = _funded(engine, user_id)
    position = _buy(engine, user_id, funding.id, quantity=2, price=10.0)

    with pytest.raises(NotFound):
        engine.sell(user_id, "inv_missing", 1, funding.id)
    with pytest.raises(NotFound):
        engine.sell(user_id, position.id, 1, "acc_missing")


def test_concurrent_sells_never_oversell(engine, user_id, store, quotes):
    funding = _funded(engine, user_id)
    position = _buy(engine, user_id, funding.id, quantity=10, price=50.0)
    quotes.prices["AAPL"] = 50.0

    barrier = threading.Barrier(2)
    outcomes = []

    def worker():
        barrier.wait()
        try:
            engine.sell(user_id, position.id, 6, funding.id)
            outcomes.append("ok")
        except (InvalidInput, NotFound):
            outcomes.append("rejected")

    threads = [threading.Thread(target=worker) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    state = store.read(user_id)
    assert sorted(outcomes) == ["ok", "rejected"]
    assert state.find_investment(position.id).quantity == 4
    assert state.find_account(funding.id).balance == 800.0
    assert state.tracking_account().balance == 200.0


def test_internal_transfer_nets_to_zero(engine, user_id, store):
    checking = _funded(engine, user_id, 500.0)
    savings = engine.create_account(user_id, "Savings", "Savings", 100.0)

    legs = engine.transfer(user_id, checking.id, 200.0, "Me", to_account_id=savings.id)

    state = store.read(user_id)
    assert sum(t.amount for t in legs) == 0
    assert state.find_account(checking.id).balance == 300.0
    assert state.find_account(savings.id).balance == 300.0


def test_wire_transfer_in_inr_is_stored_in_usd(engine, user_id, store):
    checking = _funded(engine, user_id, 500.0)

    legs = engine.transfer(
        user_id, checking.id, 8650.0, "Asha", currency="INR", bank_name="HDFC", account_number="000123456789",
    )

    assert len(legs) == 1
    assert legs[0].amount == -100.0
    assert legs[0].name == "Transfer to Asha"
    assert legs[0].payment_method == "Wire to HDFC (6789)"
    assert store.read(user_id).find_account(checking.id).balance == 400.0


def test_transfer_with_insufficient_balance_is_rejected(engine, user_id, store):
    checking = _funded(engine, user_id, 50.0)

    with pytest.raises(InsufficientFunds):
        engine.transfer(user_id, checking.id, 75.0, "Landlord")

    assert store.read(user_id).find_account(checking.id).balance == 50.0


def test_buy_compares_unrounded_cost_to_balance(engine, user_id, store):
    funding = _funded(engine, user_id, 1.00)

    with pytest.raises(InsufficientFunds):
        _buy(engine, user_id, funding.id, quantity=4, price=0.251)

    assert store.read(user_id).find_account(funding.id).balance == 1.00


def _race(*jobs):
    barrier = threading.Barrier(len(jobs))
    outcomes = []

    def run(job):
        barrier.wait()
        try:
            job()
            outcomes.append("ok")
        except InsufficientFunds:
            outcomes.append("rejected")

    threads = [threading.Thread(target=run, args=(job,)) for job in jobs]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    return sorted(outcomes)


def test_concurrent_buys_never_overdraw(engine, user_id, store):
    funding = _funded(engine, user_id, 1000.0)

    outcomes = _race(
        lambda: _buy(engine, user_id, funding.id, quantity=6, price=100.0),
        lambda: _buy(engine, user_id, funding.id, symbol="MSFT", quantity=6, price=100.0),
    )

    state = store.read(user_id)
    assert outcomes == ["ok", "rejected"]
    assert state.find_account(funding.id).balance == 400.0
    assert state.tracking_account().balance == 600.0
    assert len(state.investments) == 1


def test_buy_racing_transfer_never_overdraws(engine, user_id, store):
    funding = _funded(engine, user_id, 1000.0)

    outcomes = _race(
        lambda: _buy(engine, user_id, funding.id, quantity=7, price=100.0),
        lambda: engine.transfer(user_id, funding.id, 700.0, "Landlord"),
    )

    state = store.read(user_id)
    assert outcomes == ["ok", "rejected"]
    assert state.find_account(funding.id).balance == 300.0
    assert len(state.investments) + len(state.transactions) == 1
