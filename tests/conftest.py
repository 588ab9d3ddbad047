import asyncio
from datetime import date
from decimal import Decimal
from typing import Any, Callable

import pytest

from exchange_simulator.models import BrokerRecord, ExchangeSettings, HistoryEntry, StockRecord
from exchange_simulator.websocket_server.DataSource.PriceSeriesStore import PriceSeriesStore
from exchange_simulator.websocket_server.ExchangeInterface.SimulatedExchange import SimulatedExchange
from exchange_simulator.websocket_server.MarketClock import MarketClock
from exchange_simulator.websocket_server.TradingStateBroadcaster import TradingStateBroadcaster
from exchange_simulator.websocket_server.portfolio import PortfolioLedger
from exchange_simulator.websocket_server.trading_system import TradingSystem

# Small helpers and fixtures for event-driven testing


async def wait_for(predicate: Callable[..., Any], timeout: float = 2.0, interval: float = 0.01):
    """Wait until predicate returns truthy. Predicate may be sync or async."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        try:
            result = predicate()
            if asyncio.iscoroutine(result):
                result = await result
            if result:
                return result
        except Exception:
            # treat exceptions as not-ready; caller will see TimeoutError if it never becomes ready
            pass
        if loop.time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout} seconds")
        await asyncio.sleep(interval)


def history(*entries):
    return [HistoryEntry(date=date.fromisoformat(d), open=Decimal(str(p))) for d, p in entries]


@pytest.fixture
def stock_records():
    """AAPL trades every day, MSFT every other day, TSLA is disabled."""
    return [
        StockRecord(
            id=1,
            symbol="AAPL",
            name="Apple, Inc.",
            enabled=True,
            history=history(
                ("2021-11-01", 100),
                ("2021-11-02", 101),
                ("2021-11-03", 102),
                ("2021-11-04", 103),
                ("2021-11-05", 104),
            ),
        ),
        StockRecord(
            id=3,
            symbol="MSFT",
            name="Microsoft, Inc.",
            enabled=True,
            history=history(("2021-11-01", 300), ("2021-11-03", 310), ("2021-11-05", 320)),
        ),
        StockRecord(
            id=7,
            symbol="TSLA",
            name="Tesla, Inc.",
            enabled=False,
            history=history(("2021-11-01", 1000), ("2021-11-02", 1010), ("2021-11-08", 1100)),
        ),
    ]


@pytest.fixture
def broker_records():
    return [BrokerRecord(id=1, name="Alice", balance=Decimal("10000"))]


@pytest.fixture
def settings():
    # long tick so only explicit tick() calls advance the clock
    return ExchangeSettings(start_date=date(2021, 11, 1), tick_seconds=60)


@pytest.fixture
def store(stock_records):
    return PriceSeriesStore(stock_records)


@pytest.fixture
def ledger(broker_records):
    return PortfolioLedger(broker_records)


@pytest.fixture
def broadcaster():
    return TradingStateBroadcaster(delivery_timeout=0.5)


@pytest.fixture
async def clock(store, broadcaster, settings):
    clock = MarketClock(store, broadcaster, settings=settings)
    yield clock
    await clock.shutdown()


@pytest.fixture
def exchange(store, clock, ledger):
    return SimulatedExchange(store, clock, ledger)


@pytest.fixture
async def trading_system(store, ledger, clock, broadcaster, exchange):
    system = TradingSystem(store=store, ledger=ledger, clock=clock, broadcaster=broadcaster, exchange=exchange)
    yield system
    await system.shutdown()


class Recorder:
    """Broadcaster subscriber that records every (kind, payload) it receives."""

    def __init__(self):
        self.received = []

    async def __call__(self, kind, payload):
        self.received.append((kind, payload))

    def of_kind(self, kind):
        return [payload for k, payload in self.received if k == kind]


@pytest.fixture
def recorder():
    return Recorder()


def pytest_configure(config):
    config.addinivalue_line("markers", "e2e: mark test as end-to-end (slow)")


# Make helper functions importable from tests via pytest namespace if desired
pytest.wait_for = wait_for
