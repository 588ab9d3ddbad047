from abc import ABC, abstractmethod
from typing import List, Optional

from exchange_simulator.models import BrokerRecord, ExchangeSettings, StockRecord


class StorageInterface(ABC):
    """Durable record storage for brokers, stocks, settings and the order log.

    Implementations are synchronous; the engine calls them from worker
    threads through the persistence queue.
    """

    @abstractmethod
    def load_brokers(self) -> List[BrokerRecord]:
        pass

    @abstractmethod
    def save_broker(self, broker: BrokerRecord) -> None:
        """Insert or replace one broker record"""
        pass

    @abstractmethod
    def delete_broker(self, broker_id: int) -> None:
        pass

    @abstractmethod
    def load_stocks(self) -> List[StockRecord]:
        pass

    @abstractmethod
    def save_stock_enabled(self, symbol: str, enabled: bool) -> None:
        pass

    @abstractmethod
    def load_settings(self) -> Optional[ExchangeSettings]:
        """Return the stored settings, or None when nothing was stored yet"""
        pass

    @abstractmethod
    def save_settings(self, settings: ExchangeSettings) -> None:
        pass

    @abstractmethod
    def append_order(self, order: dict) -> None:
        pass
