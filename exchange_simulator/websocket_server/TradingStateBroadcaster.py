import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from exchange_simulator.models import TradingState

logger = logging.getLogger(__name__)

SNAPSHOT = "snapshot"
CLOCK_STATE = "clock_state"
END_OF_DATA = "end_of_data"

Subscriber = Callable[[str, Dict[str, Any]], Awaitable[None]]


class TradingStateBroadcaster:
    """
    Publish/subscribe channel for trading state snapshots.

    Subscribers are async callables ``(kind, payload)`` registered under an
    id. A new subscriber gets the latest snapshot immediately and nothing
    older. Delivery is best effort: each subscriber call is bounded by
    ``delivery_timeout`` and a failing subscriber only misses that message.
    """

    def __init__(self, delivery_timeout: float = 1.0):
        self.delivery_timeout = delivery_timeout
        self._subscribers: Dict[str, Subscriber] = {}
        self._latest: Optional[TradingState] = None
        self.stats = {"published": 0, "delivery_errors": 0}

    @property
    def latest(self) -> Optional[TradingState]:
        return self._latest

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    async def subscribe(self, subscriber_id: str, callback: Subscriber, send_latest: bool = True) -> None:
        self._subscribers[subscriber_id] = callback
        logger.debug(f"Subscriber {subscriber_id} registered ({len(self._subscribers)} total)")
        if send_latest and self._latest is not None:
            await self._deliver(subscriber_id, callback, SNAPSHOT, self._latest.to_message())

    def unsubscribe(self, subscriber_id: str) -> None:
        if self._subscribers.pop(subscriber_id, None) is not None:
            logger.debug(f"Subscriber {subscriber_id} removed ({len(self._subscribers)} left)")

    def set_latest(self, state: TradingState) -> None:
        """Record the current state without pushing it (used at startup)."""
        self._latest = state

    async def publish(self, state: TradingState) -> None:
        self._latest = state
        self.stats["published"] += 1
        await self._fan_out(SNAPSHOT, state.to_message())

    async def publish_event(self, kind: str, payload: Dict[str, Any]) -> None:
        await self._fan_out(kind, payload)

    async def _fan_out(self, kind: str, payload: Dict[str, Any]) -> None:
        if not self._subscribers:
            return
        await asyncio.gather(
            *(
                self._deliver(sub_id, callback, kind, payload)
                for sub_id, callback in list(self._subscribers.items())
            )
        )

    async def _deliver(self, subscriber_id: str, callback: Subscriber, kind: str, payload: Dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(callback(kind, payload), timeout=self.delivery_timeout)
        except asyncio.TimeoutError:
            self.stats["delivery_errors"] += 1
            logger.warning(f"Delivery of {kind} to {subscriber_id} timed out after {self.delivery_timeout}s")
        except Exception as e:
            self.stats["delivery_errors"] += 1
            logger.warning(f"Delivery of {kind} to {subscriber_id} failed: {e}")
