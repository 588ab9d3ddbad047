import json
import logging
import os
import tempfile
import threading
from typing import Any, List, Optional

from exchange_simulator.models import BrokerRecord, ExchangeSettings, StockRecord, StorageConfig
from exchange_simulator.storage.StorageInterface import StorageInterface

logger = logging.getLogger(__name__)


class JsonFileStorage(StorageInterface):
    """
    JSON-file backed storage using the layout of the original data directory:
    brokers.json, stocks.json and settings.json (indent 4), plus an append-only
    orders.jsonl log.
    """

    def __init__(self, config: Optional[StorageConfig] = None):
        self.config = config or StorageConfig()
        self.data_dir = self.config.data_dir
        self.brokers_path = os.path.join(self.data_dir, self.config.brokers_file)
        self.stocks_path = os.path.join(self.data_dir, self.config.stocks_file)
        self.settings_path = os.path.join(self.data_dir, self.config.settings_file)
        self.orders_path = os.path.join(self.data_dir, self.config.orders_file)
        # writes come from worker threads
        self._lock = threading.Lock()
        os.makedirs(self.data_dir, exist_ok=True)

    def _read_json(self, path: str, default: Any) -> Any:
        if not os.path.exists(path):
            return default
        with open(path, "r", encoding="utf-8") as f:
            content = f.read().strip()
        if not content:
            return default
        return json.loads(content)

    def _write_json(self, path: str, data: Any) -> None:
        # write to a temp file and rename so readers never see a partial file
        fd, tmp_path = tempfile.mkstemp(dir=self.data_dir, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=4, ensure_ascii=False)
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

    def load_brokers(self) -> List[BrokerRecord]:
        raw = self._read_json(self.brokers_path, [])
        brokers = [BrokerRecord.model_validate(item) for item in raw]
        logger.info(f"Loaded {len(brokers)} brokers from {self.brokers_path}")
        return brokers

    def save_broker(self, broker: BrokerRecord) -> None:
        entry = broker.model_dump(mode="json", by_alias=True)
        with self._lock:
            raw = self._read_json(self.brokers_path, [])
            for idx, item in enumerate(raw):
                if item.get("id") == broker.id:
                    raw[idx] = entry
                    break
            else:
                raw.append(entry)
            self._write_json(self.brokers_path, raw)

    def delete_broker(self, broker_id: int) -> None:
        with self._lock:
            raw = self._read_json(self.brokers_path, [])
            self._write_json(
                self.brokers_path, [item for item in raw if item.get("id") != broker_id]
            )

    def load_stocks(self) -> List[StockRecord]:
        raw = self._read_json(self.stocks_path, [])
        stocks = [StockRecord.model_validate(item) for item in raw]
        logger.info(f"Loaded {len(stocks)} stocks from {self.stocks_path}")
        return stocks

    def save_stock_enabled(self, symbol: str, enabled: bool) -> None:
        with self._lock:
            raw = self._read_json(self.stocks_path, [])
            for item in raw:
                if item.get("symbol") == symbol:
                    item["enabled"] = enabled
                    break
            else:
                logger.warning(f"Stock {symbol} not found in {self.stocks_path}")
                return
            self._write_json(self.stocks_path, raw)

    def save_stocks(self, stocks: List[StockRecord]) -> None:
        with self._lock:
            self._write_json(self.stocks_path, [s.model_dump(mode="json") for s in stocks])

    def load_settings(self) -> Optional[ExchangeSettings]:
        raw = self._read_json(self.settings_path, None)
        if raw is None:
            return None
        return ExchangeSettings.model_validate(raw)

    def save_settings(self, settings: ExchangeSettings) -> None:
        with self._lock:
            self._write_json(self.settings_path, settings.model_dump(mode="json", by_alias=True))

    def append_order(self, order: dict) -> None:
        line = json.dumps(order, default=str)
        with self._lock:
            with open(self.orders_path, "a", encoding="utf-8") as f:
                f.write(line + "\n")
