"""In-memory ingestion buffer for key events.

The buffer absorbs high frequency `add` calls without blocking the caller and
moves the queued events to the durable store in batches.

Flushes are triggered by:
    - every `add` (near real time, configurable), or the queue reaching `max_size`,
    - a periodic timer, which bounds the data lost on a crash to one interval,
    - explicit `flush` and `stop` calls.

At most one flush is in flight at any time. A flush swaps the queue out before
writing, so events added meanwhile accumulate in a fresh queue. A batch whose
write keeps failing is put back in front of the queue, never dropped.
"""

from __future__ import annotations

import asyncio
from typing import Any, Callable, Coroutine, List, Optional, Union

from loguru import logger
from pydantic import Field
from starlette.concurrency import run_in_threadpool

from keytally.config.configabc import SettingsBaseModel
from keytally.core.coreabc import ConfigMixin
from keytally.core.database import KeystrokeDatabase
from keytally.core.errors import WriteFailed
from keytally.core.models import KeyEvent

FlushedCallbackT = Union[Callable[[int], None], Callable[[int], Coroutine[Any, Any, None]]]
ErrorCallbackT = Union[
    Callable[[Exception], None], Callable[[Exception], Coroutine[Any, Any, None]]
]


class BufferCommonSettings(SettingsBaseModel):
    """Ingestion buffer configuration."""

    max_size: int = Field(
        default=100,
        ge=1,
        json_schema_extra={
            "description": "Queue length that triggers a flush.",
            "examples": [100],
        },
    )

    flush_interval_sec: float = Field(
        default=1.0,
        gt=0,
        json_schema_extra={
            "description": "Interval of the periodic flush [seconds].",
            "examples": [1.0],
        },
    )

    flush_on_add: bool = Field(
        default=True,
        json_schema_extra={
            "description": "Schedule a flush after every added event.",
            "examples": [True],
        },
    )

    max_attempts: int = Field(
        default=3,
        ge=1,
        json_schema_extra={
            "description": "Write attempts per batch before it is returned to the queue.",
            "examples": [3],
        },
    )

    retry_delay_sec: float = Field(
        default=1.0,
        ge=0,
        json_schema_extra={
            "description": "Delay before the first retry, doubled on every further retry.",
            "examples": [1.0],
        },
    )


class KeystrokeBuffer(ConfigMixin):
    """Queue of events not yet persisted, with batched and retried flushes.

    Settings not passed to the constructor are taken from the `buffer` section
    of the configuration.

    Args:
        database: Store the batches are written to.
        max_size: Queue length that triggers a flush.
        flush_interval: Seconds between periodic flushes.
        flush_on_add: Schedule a flush after every `add`.
        max_attempts: Write attempts per batch.
        retry_delay: Seconds before the first retry, doubled for each further one.
    """

    def __init__(
        self,
        database: KeystrokeDatabase,
        *,
        max_size: Optional[int] = None,
        flush_interval: Optional[float] = None,
        flush_on_add: Optional[bool] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> None:
        settings = self.config.buffer
        self._database = database
        self.max_size = settings.max_size if max_size is None else max_size
        self.flush_interval = (
            settings.flush_interval_sec if flush_interval is None else flush_interval
        )
        self.flush_on_add = settings.flush_on_add if flush_on_add is None else flush_on_add
        self.max_attempts = settings.max_attempts if max_attempts is None else max_attempts
        self.retry_delay = settings.retry_delay_sec if retry_delay is None else retry_delay

        self._queue: List[KeyEvent] = []
        self._flushing = False
        # set while no flush is in flight
        self._idle = asyncio.Event()
        self._idle.set()
        self._timer_task: Optional[asyncio.Task] = None
        self._flush_tasks: set[asyncio.Task] = set()
        self._flushed_callbacks: List[FlushedCallbackT] = []
        self._error_callbacks: List[ErrorCallbackT] = []

    # ------------------------------------------------------------------
    # Observers
    # ------------------------------------------------------------------

    def on_flushed(self, callback: FlushedCallbackT) -> None:
        """Register a callback invoked with the record count after each successful flush."""
        self._flushed_callbacks.append(callback)

    def on_error(self, callback: ErrorCallbackT) -> None:
        """Register a callback invoked with the error of a failed flush."""
        self._error_callbacks.append(callback)

    async def _notify(self, callbacks: List[Any], arg: Any) -> None:
        for callback in callbacks:
            try:
                if asyncio.iscoroutinefunction(callback):
                    await callback(arg)
                else:
                    callback(arg)
            except Exception as exc:  # noqa: BLE001
                logger.exception("KeystrokeBuffer: callback {!r} raised: {}", callback, exc)

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def add(self, event: KeyEvent) -> None:
        """Append an event to the queue and schedule a flush in the background.

        Never blocks on I/O. Without a running event loop the event only waits in
        the queue for the next flush.
        """
        self._queue.append(event)
        if self.flush_on_add or len(self._queue) >= self.max_size:
            self._schedule_flush()

    def size(self) -> int:
        """Number of queued events."""
        return len(self._queue)

    @property
    def is_flushing(self) -> bool:
        return self._flushing

    def _schedule_flush(self) -> Optional[asyncio.Task]:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return None
        task = loop.create_task(self.flush())
        self._flush_tasks.add(task)
        task.add_done_callback(self._flush_task_done)
        return task

    def _flush_task_done(self, task: asyncio.Task) -> None:
        self._flush_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("KeystrokeBuffer: background flush failed: {}", exc)

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def flush(self) -> None:
        """Write all queued events to the store.

        Returns immediately if a flush is already in progress or the queue is
        empty. A batch that still fails after `max_attempts` is put back in front
        of the queue and the error reported to the error callbacks. Errors other
        than `WriteFailed` are not retried; the batch goes back to the queue and
        the error is raised.
        """
        if self._flushing or not self._queue:
            return

        self._flushing = True
        self._idle.clear()
        batch = self._queue
        self._queue = []
        try:
            await self._write_with_retry(batch)
        except WriteFailed as exc:
            self._queue[0:0] = batch
            logger.error(
                "KeystrokeBuffer: flush of {} events failed after {} attempts, "
                "returned to queue: {}",
                len(batch),
                self.max_attempts,
                exc,
            )
            await self._notify(self._error_callbacks, exc)
            return
        except Exception as exc:
            self._queue[0:0] = batch
            logger.exception("KeystrokeBuffer: flush of {} events aborted: {}", len(batch), exc)
            await self._notify(self._error_callbacks, exc)
            raise
        finally:
            self._flushing = False
            self._idle.set()

        logger.debug("KeystrokeBuffer: flushed {} events", len(batch))
        await self._notify(self._flushed_callbacks, len(batch))

    async def _write_with_retry(self, batch: List[KeyEvent]) -> None:
        attempt = 0
        while True:
            try:
                await run_in_threadpool(self._database.save, batch)
                return
            except WriteFailed as exc:
                attempt += 1
                if attempt >= self.max_attempts:
                    raise
                delay = self.retry_delay * (2 ** (attempt - 1))
                logger.warning(
                    "KeystrokeBuffer: flush attempt {} failed, retrying in {}s: {}",
                    attempt,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic flush timer. Starting twice is a no-op."""
        if self._timer_task is not None and not self._timer_task.done():
            return
        self._timer_task = asyncio.create_task(self._run_timer(), name="keystroke-buffer-timer")

    async def _run_timer(self) -> None:
        logger.debug("KeystrokeBuffer: flush timer started (interval={}s)", self.flush_interval)
        while True:
            await asyncio.sleep(self.flush_interval)
            task = self._schedule_flush()
            if task is not None:
                # cancelling the timer must not cancel a running flush
                await asyncio.wait({task})

    async def stop(self) -> None:
        """Cancel the timer and flush everything that is still queued.

        Waits for background flushes and for any flush awaited by another
        caller first, so that the final flush is not skipped because another
        one is in flight.
        """
        if self._timer_task is not None:
            self._timer_task.cancel()
            await asyncio.gather(self._timer_task, return_exceptions=True)
            self._timer_task = None

        if self._flush_tasks:
            await asyncio.gather(*self._flush_tasks, return_exceptions=True)

        while self._flushing:
            await self._idle.wait()
        await self.flush()
