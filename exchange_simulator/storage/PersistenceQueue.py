import asyncio
import logging
from typing import Callable, Dict, Optional, Set

from exchange_simulator.models import PersistenceConfig
from exchange_simulator.websocket_server.errors import PersistenceFailure

logger = logging.getLogger(__name__)

WriteFn = Callable[[], None]


class PersistenceQueue:
    """
    Asynchronous writer for durable records.

    Writes are keyed (``broker:3``, ``settings``, ...). A newer write for a key
    replaces a pending one, so only the latest state of a record is written.
    Each write runs in a worker thread bounded by ``write_timeout``; a failed
    write is logged as a PersistenceFailure and retried with exponential
    backoff unless a newer write for the same key has arrived meanwhile.
    A write that times out keeps running in its thread and is retried only
    if it eventually fails, so appends are never duplicated.
    In-memory state stays authoritative until a write succeeds.
    """

    def __init__(self, config: Optional[PersistenceConfig] = None):
        self.config = config or PersistenceConfig()
        self._pending: Dict[str, WriteFn] = {}
        self._attempts: Dict[str, int] = {}
        self._generations: Dict[str, int] = {}
        self._generation_counter = 0
        self._in_flight: Dict[str, asyncio.Future] = {}
        self._queue: asyncio.Queue = asyncio.Queue()
        self._queued: Set[str] = set()
        self._retry_tasks: Set[asyncio.Task] = set()
        self._worker_task: Optional[asyncio.Task] = None
        # keys whose last write failed and are waiting for a retry (or gave up)
        self.failed: Dict[str, str] = {}
        self.stats = {"writes": 0, "failures": 0, "timeouts": 0, "dropped": 0}

    def start(self) -> None:
        if self._worker_task is None or self._worker_task.done():
            self._worker_task = asyncio.create_task(self._worker())

    async def stop(self, drain: bool = True, timeout: float = 5.0) -> None:
        if drain:
            try:
                await asyncio.wait_for(self.join(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Persistence queue not drained within {timeout}s, {self.pending_count} writes pending")
        for task in list(self._retry_tasks):
            task.cancel()
        if self._worker_task:
            self._worker_task.cancel()
            await asyncio.gather(self._worker_task, return_exceptions=True)
            self._worker_task = None

    async def join(self) -> None:
        """Wait until every queued write has been attempted"""
        await self._queue.join()

    def enqueue(self, key: str, write_fn: WriteFn) -> None:
        """Schedule ``write_fn``; never blocks the caller."""
        self._pending[key] = write_fn
        self._attempts[key] = 0
        self._generation_counter += 1
        self._generations[key] = self._generation_counter
        if key not in self._queued:
            self._queued.add(key)
            self._queue.put_nowait(key)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def _worker(self) -> None:
        try:
            while True:
                key = await self._queue.get()
                try:
                    self._queued.discard(key)
                    write_fn = self._pending.pop(key, None)
                    if write_fn is not None:
                        await self._run_write(key, write_fn)
                finally:
                    self._queue.task_done()
        except asyncio.CancelledError:
            logger.debug("Persistence worker cancelled")

    async def _run_write(self, key: str, write_fn: WriteFn) -> None:
        if key in self._in_flight:
            # a timed-out write for this key is still running; requeued once it settles
            self._pending.setdefault(key, write_fn)
            return
        thread_write = asyncio.ensure_future(asyncio.to_thread(write_fn))
        try:
            await asyncio.wait_for(asyncio.shield(thread_write), timeout=self.config.write_timeout)
        except asyncio.TimeoutError:
            # the thread cannot be interrupted, so its outcome decides whether to retry
            self.stats["timeouts"] += 1
            logger.warning(f"Persisting {key} exceeded {self.config.write_timeout}s, waiting for the write to settle")
            self._in_flight[key] = thread_write
            thread_write.add_done_callback(lambda fut: self._settle_late_write(key, write_fn, fut))
            return
        except Exception as e:
            self._record_failure(key, write_fn, e)
            return
        self._record_success(key)

    def _settle_late_write(self, key: str, write_fn: WriteFn, thread_write: asyncio.Future) -> None:
        self._in_flight.pop(key, None)
        if not thread_write.cancelled():
            error = thread_write.exception()
            if error is None:
                self._record_success(key)
            else:
                self._record_failure(key, write_fn, error)
        if key in self._pending and key not in self._queued:
            self._queued.add(key)
            self._queue.put_nowait(key)

    def _record_success(self, key: str) -> None:
        self.stats["writes"] += 1
        self.failed.pop(key, None)
        self._forget(key)
        logger.debug(f"Persisted {key}")

    def _record_failure(self, key: str, write_fn: WriteFn, error: BaseException) -> None:
        failure = PersistenceFailure(f"Failed to persist {key}: {error}", key=key)
        self.stats["failures"] += 1
        self.failed[key] = failure.message
        self._schedule_retry(key, write_fn)

    def _forget(self, key: str) -> None:
        # bookkeeping is kept while a newer write for the key is still waiting
        if key not in self._pending:
            self._attempts.pop(key, None)
            self._generations.pop(key, None)

    def _schedule_retry(self, key: str, write_fn: WriteFn) -> None:
        if key in self._pending:
            logger.warning(f"{self.failed[key]} - superseded by a newer write")
            return
        attempt = self._attempts.get(key, 0) + 1
        if attempt > self.config.max_retries:
            self.stats["dropped"] += 1
            logger.error(
                f"Giving up persisting {key} after {self.config.max_retries} retries; "
                f"in-memory state remains authoritative"
            )
            self._forget(key)
            return
        self._attempts[key] = attempt
        generation = self._generations.get(key, 0)
        delay = min(self.config.base_delay * (2 ** (attempt - 1)), self.config.max_delay)
        logger.warning(f"{self.failed[key]} - retry {attempt}/{self.config.max_retries} in {delay:.2f}s")

        async def _retry_later():
            await asyncio.sleep(delay)
            if self._generations.get(key, 0) != generation:
                # superseded by a newer write
                return
            self._pending[key] = write_fn
            if key not in self._queued:
                self._queued.add(key)
                self._queue.put_nowait(key)

        task = asyncio.create_task(_retry_later())
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)
