from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator


class HistoryEntry(BaseModel):
    date: date
    open: Decimal

    @field_serializer("open", when_used="json")
    def _open_as_number(self, value: Decimal) -> float:
        return float(value)


class StockRecord(BaseModel):
    """Persisted stock: static history plus the runtime ``enabled`` flag."""
    id: Optional[int] = None
    symbol: str
    name: str = ""
    enabled: bool = False
    history: List[HistoryEntry] = Field(default_factory=list)

    @field_validator("history")
    @classmethod
    def _strictly_increasing(cls, history: List[HistoryEntry]) -> List[HistoryEntry]:
        for prev, cur in zip(history, history[1:]):
            if cur.date <= prev.date:
                raise ValueError(
                    f"history must be strictly increasing by date ({prev.date} then {cur.date})"
                )
        return history


class BrokerRecord(BaseModel):
    """Persisted broker. Aliases keep the on-disk keys of brokers.json."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    name: str
    balance: Decimal = Decimal("0")
    holdings: Dict[str, int] = Field(default_factory=dict, alias="stocks")
    cost_basis: Dict[str, Decimal] = Field(default_factory=dict, alias="stocksPurchasePrice")

    @field_validator("balance")
    @classmethod
    def _non_negative(cls, balance: Decimal) -> Decimal:
        if balance < 0:
            raise ValueError("balance must be >= 0")
        return balance

    @field_serializer("balance", when_used="json")
    def _balance_as_number(self, value: Decimal) -> float:
        return float(value)

    @field_serializer("cost_basis", when_used="json")
    def _cost_basis_as_numbers(self, value: Dict[str, Decimal]) -> Dict[str, float]:
        return {symbol: float(price) for symbol, price in value.items()}


class ExchangeSettings(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    start_date: date = Field(default=date(2021, 11, 3), alias="startDate")
    tick_seconds: float = Field(default=1.0, gt=0, alias="tickSeconds")
    running: bool = False


class ClockStatus(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"


class OrderSide(str, Enum):
    BUY = "buy"
    SELL = "sell"


class TradingState(BaseModel):
    """Snapshot pushed to viewers on every tick and on connect."""
    current_date: Optional[date] = None
    prices: Dict[str, Decimal] = Field(default_factory=dict)
    status: ClockStatus = ClockStatus.STOPPED
    tick: int = 0

    def to_message(self) -> Dict:
        return {
            "currentDate": self.current_date.isoformat() if self.current_date else None,
            "prices": {symbol: float(price) for symbol, price in self.prices.items()},
            "status": self.status.value,
            "tick": self.tick,
        }


class UriConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8000


class ServerConfig(BaseModel):
    """Configuration for WebSocket server"""
    uri: UriConfig = Field(default_factory=lambda: UriConfig(host="localhost", port=8000))
    ping_interval: Optional[float] = 20
    ping_timeout: Optional[float] = 20
    max_in_flight_messages: int = 10


class StorageConfig(BaseModel):
    data_dir: str = "data"
    brokers_file: str = "brokers.json"
    stocks_file: str = "stocks.json"
    settings_file: str = "settings.json"
    orders_file: str = "orders.jsonl"


class PersistenceConfig(BaseModel):
    write_timeout: float = 5.0
    base_delay: float = 0.5
    max_delay: float = 30.0
    max_retries: int = 10


class ClockConfig(BaseModel):
    # Used only when settings.json does not exist yet
    start_date: date = date(2021, 11, 3)
    tick_seconds: float = Field(default=1.0, gt=0)
    resume_on_startup: bool = True


class BroadcastConfig(BaseModel):
    delivery_timeout: float = 1.0


class AppConfig(BaseModel):
    """Complete application configuration"""
    server: ServerConfig = Field(default_factory=ServerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    persistence: PersistenceConfig = Field(default_factory=PersistenceConfig)
    clock: ClockConfig = Field(default_factory=ClockConfig)
    broadcast: BroadcastConfig = Field(default_factory=BroadcastConfig)
