import logging
from typing import Any, Dict, Optional

from exchange_simulator.models import AppConfig, ExchangeSettings
from exchange_simulator.storage.PersistenceQueue import PersistenceQueue
from exchange_simulator.storage.StorageInterface import StorageInterface
from exchange_simulator.websocket_server.DataSource.PriceSeriesStore import PriceSeriesStore
from exchange_simulator.websocket_server.ExchangeInterface.SimulatedExchange import SimulatedExchange
from exchange_simulator.websocket_server.MarketClock import MarketClock
from exchange_simulator.websocket_server.TradingStateBroadcaster import TradingStateBroadcaster
from exchange_simulator.websocket_server.errors import UnknownSymbol
from exchange_simulator.websocket_server.portfolio import PortfolioLedger

logger = logging.getLogger(__name__)


class TradingSystem:
    """Owned service objects of one exchange process, built once at startup."""

    def __init__(
        self,
        store: PriceSeriesStore,
        ledger: PortfolioLedger,
        clock: MarketClock,
        broadcaster: TradingStateBroadcaster,
        exchange: SimulatedExchange,
        storage: Optional[StorageInterface] = None,
        persistence: Optional[PersistenceQueue] = None,
        resume_clock: bool = False,
    ):
        self.store = store
        self.ledger = ledger
        self.clock = clock
        self.broadcaster = broadcaster
        self.exchange = exchange
        self.storage = storage
        self.persistence = persistence
        self._resume_clock = resume_clock

    @classmethod
    def from_storage(cls, storage: StorageInterface, config: Optional[AppConfig] = None) -> "TradingSystem":
        """Load brokers, stocks and settings from ``storage`` and wire the services."""
        config = config or AppConfig()
        settings = storage.load_settings()
        if settings is None:
            settings = ExchangeSettings(
                start_date=config.clock.start_date,
                tick_seconds=config.clock.tick_seconds,
            )
        store = PriceSeriesStore(storage.load_stocks())
        ledger = PortfolioLedger(storage.load_brokers())
        broadcaster = TradingStateBroadcaster(delivery_timeout=config.broadcast.delivery_timeout)
        persistence = PersistenceQueue(config.persistence)

        def save_settings(updated: ExchangeSettings):
            persistence.enqueue("settings", lambda: storage.save_settings(updated))

        clock = MarketClock(store, broadcaster, settings=settings, on_settings_changed=save_settings)
        exchange = SimulatedExchange(store, clock, ledger, storage=storage, persistence=persistence)
        return cls(
            store=store,
            ledger=ledger,
            clock=clock,
            broadcaster=broadcaster,
            exchange=exchange,
            storage=storage,
            persistence=persistence,
            resume_clock=settings.running and config.clock.resume_on_startup,
        )

    async def start(self) -> None:
        if self.persistence is not None:
            self.persistence.start()
        if self._resume_clock:
            logger.info("Clock was running before shutdown, resuming")
            await self.clock.start()

    async def shutdown(self) -> None:
        await self.clock.shutdown()
        if self.persistence is not None:
            await self.persistence.stop(drain=True)

    async def set_stock_enabled(self, symbol: str, enabled: bool) -> Dict[str, Any]:
        series = self.store.set_enabled(symbol, enabled)
        if series is None:
            raise UnknownSymbol(f"Unknown symbol: {symbol}", symbol=symbol)
        if self.persistence is not None and self.storage is not None:
            storage = self.storage
            self.persistence.enqueue(f"stock:{symbol}", lambda: storage.save_stock_enabled(symbol, enabled))
        await self.clock.refresh()
        return series.to_record(include_history=False).model_dump(mode="json")
