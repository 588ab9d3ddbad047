import logging
import os
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pandas as pd
import yaml

from exchange_simulator.models import HistoryEntry, StockRecord, StorageConfig
from exchange_simulator.storage.JsonFileStorage import JsonFileStorage

logger = logging.getLogger(__name__)

DEFAULT_STOCK_MAPPING: Dict[str, Dict[str, Any]] = {
    "AAPL": {"id": 1, "name": "Apple, Inc.", "enabled": True},
    "SBUX": {"id": 2, "name": "Starbucks, Inc.", "enabled": False},
    "MSFT": {"id": 3, "name": "Microsoft, Inc.", "enabled": True},
    "CSCO": {"id": 4, "name": "Cisco Systems, Inc.", "enabled": True},
    "QCOM": {"id": 5, "name": "QUALCOMM Incorporated", "enabled": True},
    "AMZN": {"id": 6, "name": "Amazon.com, Inc.", "enabled": True},
    "TSLA": {"id": 7, "name": "Tesla, Inc.", "enabled": False},
    "AMD": {"id": 8, "name": "Advanced Micro Devices, Inc.", "enabled": False},
    "META": {"id": 9, "name": "Meta Platforms, Inc.", "enabled": False},
    "NFLX": {"id": 10, "name": "Netflix, Inc.", "enabled": False},
}

DATE_FORMAT = "%m/%d/%Y"
OPEN_COLUMN_INDEX = 3


def load_mapping(mapping_file: Optional[str]) -> Dict[str, Dict[str, Any]]:
    """Load a symbol -> {id, name, enabled} mapping from YAML or JSON."""
    if not mapping_file:
        return dict(DEFAULT_STOCK_MAPPING)
    with open(mapping_file, "r", encoding="utf-8") as f:
        mapping = yaml.safe_load(f) or {}
    if not isinstance(mapping, dict):
        raise ValueError(f"Mapping file {mapping_file} must contain an object keyed by symbol")
    return mapping


def parse_price_csv(csv_file: str) -> List[HistoryEntry]:
    """
    Read one symbol's daily prices.

    Dates are MM/DD/YYYY, opens may carry a ``$`` prefix. Without an ``Open``
    header the fourth column is used. Unparsable rows are dropped, the result
    is sorted ascending and duplicate dates keep their last row.
    """
    df = pd.read_csv(csv_file, dtype=str, skipinitialspace=True)
    df.columns = [str(c).strip() for c in df.columns]
    if df.empty:
        return []

    date_col = "Date" if "Date" in df.columns else df.columns[0]
    if "Open" in df.columns:
        open_col = "Open"
    elif len(df.columns) > OPEN_COLUMN_INDEX:
        open_col = df.columns[OPEN_COLUMN_INDEX]
    else:
        raise ValueError(f"{csv_file} has no Open column")

    frame = pd.DataFrame(
        {
            "date": pd.to_datetime(df[date_col].str.strip(), format=DATE_FORMAT, errors="coerce"),
            "open": pd.to_numeric(
                df[open_col].str.replace("$", "", regex=False).str.strip(), errors="coerce"
            ),
        }
    )
    dropped = len(frame)
    frame = frame.dropna()
    dropped -= len(frame)
    if dropped:
        logger.warning(f"Dropped {dropped} unparsable rows from {csv_file}")

    frame = frame.sort_values("date", kind="stable").drop_duplicates("date", keep="last")
    return [
        HistoryEntry(date=ts.date(), open=Decimal(str(price)))
        for ts, price in zip(frame["date"], frame["open"])
    ]


def build_stock_records(csv_dir: str, mapping: Optional[Dict[str, Dict[str, Any]]] = None) -> List[StockRecord]:
    """Build stock records from every ``<SYMBOL>.csv`` in ``csv_dir``, sorted by id."""
    mapping = DEFAULT_STOCK_MAPPING if mapping is None else mapping
    stocks: List[StockRecord] = []
    for file_name in sorted(os.listdir(csv_dir)):
        if not file_name.endswith(".csv"):
            continue
        symbol = os.path.splitext(file_name)[0]
        info = mapping.get(symbol)
        if info is None:
            logger.warning(f"Skipping {symbol} - no mapping")
            continue

        logger.info(f"Processing {symbol}...")
        history = parse_price_csv(os.path.join(csv_dir, file_name))
        stocks.append(
            StockRecord(
                id=info.get("id"),
                symbol=symbol,
                name=info.get("name", symbol),
                enabled=bool(info.get("enabled", False)),
                history=history,
            )
        )

    stocks.sort(key=lambda s: (s.id is None, s.id or 0))
    return stocks


def write_stocks(stocks: List[StockRecord], output_file: str) -> None:
    data_dir, file_name = os.path.split(os.path.abspath(output_file))
    storage = JsonFileStorage(StorageConfig(data_dir=data_dir, stocks_file=file_name))
    storage.save_stocks(stocks)
    logger.info(f"Wrote {len(stocks)} stocks to {output_file}")
    for stock in stocks:
        logger.info(f"  {stock.symbol}: {len(stock.history)} entries")
