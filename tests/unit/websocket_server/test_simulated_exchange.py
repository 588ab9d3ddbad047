"""
Unit tests for SimulatedExchange order execution and broker administration
"""
import asyncio
from datetime import date
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from exchange_simulator.models import PersistenceConfig
from exchange_simulator.storage.PersistenceQueue import PersistenceQueue
from exchange_simulator.websocket_server.ExchangeInterface.SimulatedExchange import SimulatedExchange
from exchange_simulator.websocket_server.errors import (
    BrokerHasHoldings,
    BrokerNotFound,
    InsufficientFunds,
    InsufficientHoldings,
    InvalidOrder,
    PriceUnavailable,
    SymbolDisabled,
    UnknownSymbol,
)


@pytest.mark.asyncio
async def test_buy_fills_at_current_date_price(exchange, ledger):
    result = await exchange.submit_order(1, "AAPL", "buy", 50)

    assert result.price == Decimal("100")
    assert result.current_date == date(2021, 11, 1)
    assert result.new_balance == Decimal("5000")
    assert result.new_holdings == {"AAPL": 50}
    assert ledger.get(1).balance == Decimal("5000")


@pytest.mark.asyncio
async def test_buy_over_balance_is_rejected_and_state_unchanged(exchange, ledger):
    await exchange.submit_order(1, "AAPL", "buy", 50)

    with pytest.raises(InsufficientFunds):
        await exchange.submit_order(1, "AAPL", "buy", 60)

    portfolio = ledger.get(1)
    assert portfolio.balance == Decimal("5000")
    assert portfolio.holdings == {"AAPL": 50}
    assert len(exchange.list_orders(1)) == 1


@pytest.mark.asyncio
async def test_price_follows_the_clock(exchange, clock):
    await clock.start()
    await clock.tick()
    await clock.tick()

    result = await exchange.submit_order(1, "MSFT", "BUY", 1)
    assert result.price == Decimal("310")

    await clock.tick()
    # MSFT has no entry on 11-04, the 11-03 price carries forward
    sell = await exchange.submit_order(1, "MSFT", "sell", 1)
    assert sell.price == Decimal("310")
    assert sell.current_date == date(2021, 11, 4)


@pytest.mark.asyncio
async def test_sell_more_than_held(exchange):
    await exchange.submit_order(1, "AAPL", "buy", 2)
    with pytest.raises(InsufficientHoldings):
        await exchange.submit_order(1, "AAPL", "sell", 3)


@pytest.mark.asyncio
async def test_rejections_for_symbol_problems(exchange, clock):
    with pytest.raises(SymbolDisabled):
        await exchange.submit_order(1, "TSLA", "buy", 1)
    with pytest.raises(UnknownSymbol):
        await exchange.submit_order(1, "NOPE", "buy", 1)

    clock.current_date = date(2021, 10, 1)
    with pytest.raises(PriceUnavailable):
        await exchange.submit_order(1, "AAPL", "buy", 1)


@pytest.mark.asyncio
@pytest.mark.parametrize("side,quantity", [("hold", 1), ("buy", 0), ("buy", -5), ("buy", 1.5), ("buy", True), ("buy", "10")])
async def test_invalid_orders(exchange, ledger, side, quantity):
    with pytest.raises(InvalidOrder):
        await exchange.submit_order(1, "AAPL", side, quantity)
    assert ledger.get(1).balance == Decimal("10000")


@pytest.mark.asyncio
async def test_unknown_broker(exchange):
    with pytest.raises(BrokerNotFound):
        await exchange.submit_order(99, "AAPL", "buy", 1)


@pytest.mark.asyncio
async def test_disabling_a_stock_blocks_orders_and_hides_it(trading_system, exchange):
    await trading_system.set_stock_enabled("AAPL", False)

    with pytest.raises(SymbolDisabled):
        await exchange.submit_order(1, "AAPL", "buy", 1)
    assert "AAPL" not in trading_system.broadcaster.latest.prices

    await trading_system.set_stock_enabled("AAPL", True)
    assert "AAPL" in trading_system.broadcaster.latest.prices


@pytest.mark.asyncio
async def test_set_stock_enabled_unknown_symbol(trading_system):
    with pytest.raises(UnknownSymbol):
        await trading_system.set_stock_enabled("NOPE", True)


@pytest.mark.asyncio
async def test_concurrent_orders_for_one_broker_never_overdraw(exchange, ledger):
    # each order costs 2000, only five fit into the 10000 balance
    results = await asyncio.gather(
        *(exchange.submit_order(1, "AAPL", "buy", 20) for _ in range(10)),
        return_exceptions=True,
    )

    filled = [r for r in results if not isinstance(r, Exception)]
    rejected = [r for r in results if isinstance(r, InsufficientFunds)]
    assert len(filled) == 5
    assert len(rejected) == 5
    portfolio = ledger.get(1)
    assert portfolio.balance == Decimal("0")
    assert portfolio.holdings == {"AAPL": 100}


@pytest.mark.asyncio
async def test_orders_for_different_brokers_are_independent(exchange, ledger):
    await exchange.add_broker("Bob", Decimal("100"))

    results = await asyncio.gather(
        exchange.submit_order(1, "AAPL", "buy", 10),
        exchange.submit_order(2, "AAPL", "buy", 5),
        return_exceptions=True,
    )

    assert isinstance(results[1], InsufficientFunds)
    assert ledger.get(1).holdings == {"AAPL": 10}
    assert ledger.get(2).balance == Decimal("100")


@pytest.mark.asyncio
async def test_order_status_and_listing(exchange):
    result = await exchange.submit_order(1, "AAPL", "buy", 1)

    status = await exchange.get_order_status(result.order_id)
    assert status["status"] == "FILLED"
    assert status["symbol"] == "AAPL"
    assert status["simulated_date"] == "2021-11-01"

    missing = await exchange.get_order_status("nope")
    assert missing["status"] == "NOT_FOUND"

    assert [o.id for o in exchange.list_orders(1)] == [result.order_id]
    assert exchange.list_orders(2) == []


@pytest.mark.asyncio
async def test_get_balance_values_holdings_at_current_prices(exchange):
    await exchange.submit_order(1, "AAPL", "buy", 10)
    balance = await exchange.get_balance(1)
    assert balance["balance"] == 9000.0
    assert balance["total_value"] == 10000.0


@pytest.mark.asyncio
async def test_delete_broker_requires_liquidation(exchange, ledger, store):
    await exchange.submit_order(1, "AAPL", "buy", 10)
    store.set_enabled("AAPL", False)

    with pytest.raises(BrokerHasHoldings):
        await exchange.delete_broker(1)

    # disabled holdings are still sold on liquidation
    orders = await exchange.delete_broker(1, liquidate=True)
    assert [(o.symbol, o.side, o.quantity) for o in orders] == [("AAPL", "sell", 10)]
    with pytest.raises(BrokerNotFound):
        ledger.get(1)


@pytest.mark.asyncio
async def test_rename_broker(exchange, ledger):
    await exchange.rename_broker(1, "Alicia")
    assert ledger.get(1).name == "Alicia"
    with pytest.raises(InvalidOrder):
        await exchange.rename_broker(1, "")


@pytest.mark.asyncio
async def test_committed_orders_are_persisted(store, clock, ledger):
    storage = MagicMock()
    persistence = PersistenceQueue(PersistenceConfig(write_timeout=1.0))
    exchange = SimulatedExchange(store, clock, ledger, storage=storage, persistence=persistence)
    persistence.start()
    try:
        await exchange.submit_order(1, "AAPL", "buy", 3)
        await persistence.join()
    finally:
        await persistence.stop()

    saved = storage.save_broker.call_args.args[0]
    assert saved.id == 1
    assert saved.holdings == {"AAPL": 3}
    order = storage.append_order.call_args.args[0]
    assert order["quantity"] == 3 and order["side"] == "buy"
