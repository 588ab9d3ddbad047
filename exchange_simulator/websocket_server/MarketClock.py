import asyncio
import logging
from datetime import date
from typing import Any, Callable, Dict, Optional

from exchange_simulator.models import ClockStatus, ExchangeSettings, TradingState
from exchange_simulator.websocket_server.DataSource.PriceSeriesStore import PriceSeriesStore
from exchange_simulator.websocket_server.TradingStateBroadcaster import (
    CLOCK_STATE,
    END_OF_DATA,
    TradingStateBroadcaster,
)
from exchange_simulator.websocket_server.errors import ClockRunning, InvalidRequest

logger = logging.getLogger(__name__)


class MarketClock:
    """
    Logical clock replaying the trading dates of the enabled stocks.

    States: stopped (initial), running, paused. While running, a single timer
    task advances ``current_date`` every ``tick_seconds`` to the next trading
    date and publishes the snapshot. Ticks, state transitions and snapshot
    pushes all run under one lock, so the date never moves mid-snapshot.
    """

    def __init__(
        self,
        store: PriceSeriesStore,
        broadcaster: TradingStateBroadcaster,
        settings: Optional[ExchangeSettings] = None,
        on_settings_changed: Optional[Callable[[ExchangeSettings], None]] = None,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.settings = settings.model_copy() if settings else ExchangeSettings()
        self._on_settings_changed = on_settings_changed
        self.status = ClockStatus.STOPPED
        self.tick_count = 0
        self._lock = asyncio.Lock()
        self._timer_task: Optional[asyncio.Task] = None
        self.current_date: Optional[date] = self._resolve_start()
        self.broadcaster.set_latest(self.snapshot())

    @property
    def running(self) -> bool:
        return self.status == ClockStatus.RUNNING

    def _resolve_start(self) -> date:
        first = self.store.first_date_on_or_after(self.settings.start_date)
        return first if first is not None else self.settings.start_date

    def snapshot(self) -> TradingState:
        return TradingState(
            current_date=self.current_date,
            prices=self.store.prices_at(self.current_date),
            status=self.status,
            tick=self.tick_count,
        )

    def state_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "currentDate": self.current_date.isoformat() if self.current_date else None,
            "tick": self.tick_count,
            "settings": self.settings.model_dump(mode="json", by_alias=True),
        }

    def _apply_settings(self, start_date: Optional[date], tick_seconds: Optional[float]) -> bool:
        if tick_seconds is not None and tick_seconds <= 0:
            raise InvalidRequest("tick_seconds must be positive", field="tick_seconds")
        changed = False
        if start_date is not None and start_date != self.settings.start_date:
            self.settings.start_date = start_date
            changed = True
        if tick_seconds is not None and tick_seconds != self.settings.tick_seconds:
            self.settings.tick_seconds = tick_seconds
            changed = True
        return changed

    def _settings_changed(self) -> None:
        self.settings.running = self.status == ClockStatus.RUNNING
        if self._on_settings_changed:
            self._on_settings_changed(self.settings.model_copy())

    async def start(self, start_date: Optional[date] = None, tick_seconds: Optional[float] = None) -> Dict[str, Any]:
        """
        Start or resume ticking.

        From stopped the clock begins at the first trading date on or after
        the start date; from paused it resumes at the frozen date. Calling it
        while running is a no-op unless the settings change, in which case
        the clock restarts from the new start date.
        """
        async with self._lock:
            would_change = (start_date is not None and start_date != self.settings.start_date) or (
                tick_seconds is not None and tick_seconds != self.settings.tick_seconds
            )
            if self.status == ClockStatus.RUNNING and not would_change:
                logger.info("Market clock already running")
                return self.state_dict()

            changed = self._apply_settings(start_date, tick_seconds)
            await self._cancel_timer()

            if self.status == ClockStatus.PAUSED and not changed:
                logger.info(f"Market clock resuming at {self.current_date}")
            else:
                self.tick_count = 0
                first = self.store.first_date_on_or_after(self.settings.start_date)
                if first is None:
                    self.current_date = self.store.last_date() or self.settings.start_date
                    await self._end_of_data()
                    return self.state_dict()
                self.current_date = first
                logger.info(f"Market clock starting at {first}, tick every {self.settings.tick_seconds}s")

            self.status = ClockStatus.RUNNING
            self._settings_changed()
            await self.broadcaster.publish(self.snapshot())
            await self.broadcaster.publish_event(CLOCK_STATE, self.state_dict())
            self._timer_task = asyncio.create_task(self._run_timer())
            return self.state_dict()

    async def pause(self) -> Dict[str, Any]:
        async with self._lock:
            if self.status != ClockStatus.RUNNING:
                return self.state_dict()
            await self._cancel_timer()
            self.status = ClockStatus.PAUSED
            self._settings_changed()
            logger.info(f"Market clock paused at {self.current_date}")
            await self.broadcaster.publish_event(CLOCK_STATE, self.state_dict())
            return self.state_dict()

    async def stop(self) -> Dict[str, Any]:
        async with self._lock:
            if self.status == ClockStatus.STOPPED:
                return self.state_dict()
            await self._cancel_timer()
            self.status = ClockStatus.STOPPED
            self.tick_count = 0
            self.current_date = self._resolve_start()
            self._settings_changed()
            logger.info("Market clock stopped")
            await self.broadcaster.publish(self.snapshot())
            await self.broadcaster.publish_event(CLOCK_STATE, self.state_dict())
            return self.state_dict()

    async def update_settings(self, start_date: Optional[date] = None, tick_seconds: Optional[float] = None) -> Dict[str, Any]:
        async with self._lock:
            if self.status != ClockStatus.STOPPED:
                raise ClockRunning("Settings can only be changed while the clock is stopped")
            if self._apply_settings(start_date, tick_seconds):
                self.current_date = self._resolve_start()
                self._settings_changed()
                await self.broadcaster.publish_event(CLOCK_STATE, self.state_dict())
            return self.state_dict()

    async def tick(self) -> bool:
        """Advance one trading date. Returns True when the date moved."""
        async with self._lock:
            if self.status != ClockStatus.RUNNING:
                return False
            if not self.store.trading_dates():
                logger.warning("No enabled stocks for trading, skipping tick")
                return False
            if self.current_date is None:
                next_date = self.store.first_date_on_or_after(self.settings.start_date)
            else:
                next_date = self.store.next_date_after(self.current_date)
            if next_date is None:
                await self._end_of_data()
                return False
            self.current_date = next_date
            self.tick_count += 1
            await self.broadcaster.publish(self.snapshot())
            return True

    async def refresh(self) -> None:
        """Re-publish the current snapshot, e.g. after a stock was enabled or disabled."""
        async with self._lock:
            await self.broadcaster.publish(self.snapshot())

    async def shutdown(self) -> None:
        """Cancel the timer without changing the persisted state."""
        await self._cancel_timer()

    async def _end_of_data(self) -> None:
        # caller holds the lock
        self.status = ClockStatus.STOPPED
        self._settings_changed()
        logger.info(f"Market clock reached end of data at {self.current_date}")
        await self.broadcaster.publish(self.snapshot())
        await self.broadcaster.publish_event(
            END_OF_DATA,
            {
                "currentDate": self.current_date.isoformat() if self.current_date else None,
                "message": "End of simulated data reached",
            },
        )

    async def _run_timer(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.settings.tick_seconds)
                try:
                    await self.tick()
                except Exception:
                    logger.exception("Error during market clock tick")
                if self.status != ClockStatus.RUNNING:
                    break
        except asyncio.CancelledError:
            logger.debug("Market clock timer cancelled")

    async def _cancel_timer(self) -> None:
        task = self._timer_task
        self._timer_task = None
        if task is None or task is asyncio.current_task() or task.done():
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
