import bisect
import logging
from datetime import date
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from exchange_simulator.models import HistoryEntry, StockRecord

logger = logging.getLogger(__name__)


class StockSeries:
    """Historical opening prices for one symbol, indexed for date lookups."""

    def __init__(self, record: StockRecord):
        self.id = record.id
        self.symbol = record.symbol
        self.name = record.name
        self.enabled = record.enabled
        # history is immutable after ingestion, keep it as tuples
        self.dates: tuple[date, ...] = tuple(entry.date for entry in record.history)
        self.opens: tuple[Decimal, ...] = tuple(entry.open for entry in record.history)

    def price_at(self, on: date) -> Optional[Decimal]:
        # rightmost entry at or before `on` (carry-forward)
        idx = bisect.bisect_right(self.dates, on)
        if idx == 0:
            return None
        return self.opens[idx - 1]

    def to_record(self, include_history: bool = True) -> StockRecord:
        history = (
            [HistoryEntry(date=d, open=o) for d, o in zip(self.dates, self.opens)]
            if include_history
            else []
        )
        return StockRecord(
            id=self.id,
            symbol=self.symbol,
            name=self.name,
            enabled=self.enabled,
            history=history,
        )


class PriceSeriesStore:
    """
    Read-mostly store of per-symbol price series.

    Shared by the market clock, the broadcaster and the order execution
    service. The only runtime mutation is the per-stock ``enabled`` flag.
    """

    def __init__(self, records: Iterable[StockRecord] = ()):
        self._series: Dict[str, StockSeries] = {}
        self._dates_cache: Optional[List[date]] = None
        for record in records:
            if record.symbol in self._series:
                raise ValueError(f"Duplicate stock symbol: {record.symbol}")
            self._series[record.symbol] = StockSeries(record)
        logger.info(f"Loaded price series for {len(self._series)} stocks")

    @property
    def symbols(self) -> List[str]:
        return list(self._series.keys())

    def has_symbol(self, symbol: str) -> bool:
        return symbol in self._series

    def is_enabled(self, symbol: str) -> bool:
        series = self._series.get(symbol)
        return bool(series and series.enabled)

    def enabled_symbols(self) -> List[str]:
        return [s.symbol for s in self._series.values() if s.enabled]

    def set_enabled(self, symbol: str, enabled: bool) -> Optional[StockSeries]:
        series = self._series.get(symbol)
        if series is None:
            return None
        if series.enabled != enabled:
            series.enabled = enabled
            self._dates_cache = None
            logger.info(f"Stock {symbol} {'enabled' if enabled else 'disabled'}")
        return series

    def price_at(self, symbol: str, on: Optional[date]) -> Optional[Decimal]:
        """
        Resolve the price of ``symbol`` on ``on``.

        Exact date match first; when the date is missing from the series the
        last known price before it is carried forward. Returns None when the
        symbol is unknown, ``on`` is None, or no price exists at or before it.
        """
        if on is None:
            return None
        series = self._series.get(symbol)
        if series is None:
            return None
        return series.price_at(on)

    def prices_at(self, on: Optional[date]) -> Dict[str, Decimal]:
        """Resolvable prices of every enabled stock on ``on``."""
        prices: Dict[str, Decimal] = {}
        for symbol in self.enabled_symbols():
            price = self.price_at(symbol, on)
            if price is not None:
                prices[symbol] = price
        return prices

    def trading_dates(self) -> List[date]:
        """Sorted union of the history dates of all enabled stocks."""
        if self._dates_cache is None:
            dates = set()
            for series in self._series.values():
                if series.enabled:
                    dates.update(series.dates)
            self._dates_cache = sorted(dates)
        return self._dates_cache

    def first_date_on_or_after(self, on: date) -> Optional[date]:
        dates = self.trading_dates()
        idx = bisect.bisect_left(dates, on)
        return dates[idx] if idx < len(dates) else None

    def next_date_after(self, on: date) -> Optional[date]:
        dates = self.trading_dates()
        idx = bisect.bisect_right(dates, on)
        return dates[idx] if idx < len(dates) else None

    def last_date(self) -> Optional[date]:
        dates = self.trading_dates()
        return dates[-1] if dates else None

    def get_history(
        self, symbol: str, start: Optional[date] = None, end: Optional[date] = None
    ) -> Optional[List[HistoryEntry]]:
        """History of ``symbol`` filtered to the inclusive [start, end] range."""
        series = self._series.get(symbol)
        if series is None:
            return None
        lo = bisect.bisect_left(series.dates, start) if start else 0
        hi = bisect.bisect_right(series.dates, end) if end else len(series.dates)
        return [
            HistoryEntry(date=d, open=o)
            for d, o in zip(series.dates[lo:hi], series.opens[lo:hi])
        ]

    def list_stocks(self) -> List[StockRecord]:
        """Stock records without their histories."""
        return [s.to_record(include_history=False) for s in self._series.values()]
