"""KeyTally service.

Composes the durable store, the ingestion buffer and the statistics cache and
owns their lifecycle. Events from the input hook enter through `handle_event`;
presentation code queries aggregates, exports data and runs the reset and
restore workflows through the same object.

Example:
    .. code-block:: python

        service = KeyTallyService()
        await service.start()
        service.handle_event({"keyCode": 65, "keyName": "A", "timestamp": 1699990000000})
        stats = await service.get_stats("day", "2023-11-14")
        await service.stop()
"""

import asyncio
from pathlib import Path
from typing import Any, Callable, List, Optional, Union

from loguru import logger
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from keytally.core.buffer import KeystrokeBuffer
from keytally.core.coreabc import ConfigMixin
from keytally.core.database import KeystrokeDatabase
from keytally.core.models import Backup, KeyEvent, Period
from keytally.core.statistics import StatisticsService
from keytally.utils.export import ExportFormat, export_records, export_stats


class KeyTallyService(ConfigMixin):
    """Composition root of store, buffer and statistics.

    Components not passed in are created from the configuration.

    Args:
        database: Durable store.
        buffer: Ingestion buffer writing to `database`.
        statistics: Statistics service reading from `database`.
    """

    def __init__(
        self,
        database: Optional[KeystrokeDatabase] = None,
        buffer: Optional[KeystrokeBuffer] = None,
        statistics: Optional[StatisticsService] = None,
    ) -> None:
        if database is None:
            database = KeystrokeDatabase(
                self.config.database_path(), timeout=self.config.database.timeout_sec
            )
        self.database = database
        self.buffer = buffer if buffer is not None else KeystrokeBuffer(database)
        self.statistics = statistics if statistics is not None else StatisticsService(database)
        self._running = False
        # reset and restore must not interleave
        self._maintenance_lock = asyncio.Lock()
        self._data_updated_callbacks: List[Callable[[int], Any]] = []

        self.buffer.on_flushed(self._on_flushed)
        self.buffer.on_error(self._on_flush_error)

    @property
    def is_running(self) -> bool:
        return self._running

    def on_data_updated(self, callback: Callable[[int], Any]) -> None:
        """Register a callback invoked with the number of new records after each flush."""
        self._data_updated_callbacks.append(callback)

    async def _on_flushed(self, count: int) -> None:
        self.statistics.clear_cache()
        logger.debug("Data updated: {} keystrokes written", count)
        for callback in self._data_updated_callbacks:
            if asyncio.iscoroutinefunction(callback):
                await callback(count)
            else:
                callback(count)

    def _on_flush_error(self, error: Exception) -> None:
        logger.error(
            "Keystrokes kept in buffer after failed flush ({} queued): {}",
            self.buffer.size(),
            error,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Open the store and start the periodic buffer flush."""
        if self._running:
            logger.warning("KeyTallyService is already running")
            return
        await run_in_threadpool(self.database.open)
        await self.buffer.start()
        self._running = True
        logger.info("KeyTallyService started, store at {}", self.database.db_file)

    async def stop(self) -> None:
        """Flush the buffer and close the store."""
        if not self._running:
            logger.warning("KeyTallyService is not running")
            return
        await self.buffer.stop()
        await run_in_threadpool(self.database.close)
        self._running = False
        logger.info("KeyTallyService stopped")

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    def handle_event(self, event: Union[KeyEvent, dict]) -> bool:
        """Queue an event from the input hook.

        Malformed events are logged and dropped so that capture never stops.

        Returns:
            True if the event was queued.
        """
        try:
            if not isinstance(event, KeyEvent):
                event = KeyEvent.model_validate(event)
        except ValidationError as e:
            logger.error("Dropping malformed key event {!r}: {}", event, e)
            return False
        self.buffer.add(event)
        return True

    async def flush(self) -> None:
        await self.buffer.flush()

    def buffer_size(self) -> int:
        return self.buffer.size()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_stats(self, period: Union[Period, str], date: Any) -> Any:
        """Daily, monthly or yearly aggregate of the period containing `date`."""
        return await self.statistics.get_period_stats(period, date)

    async def list_backups(self) -> List[Backup]:
        return await run_in_threadpool(self.database.list_backups)

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def reset(self) -> Backup:
        """Back up the store, then delete all records.

        Returns:
            The backup taken before clearing.
        """
        async with self._maintenance_lock:
            backup = await run_in_threadpool(self._backup_and_clear)
            self.statistics.clear_cache()
        logger.info("Data reset, backup at {}", backup.path)
        return backup

    def _backup_and_clear(self) -> Backup:
        with self.database.lock:
            backup = self.database.backup()
            self.database.clear()
        return backup

    async def restore(self, backup_path: Union[Path, str]) -> None:
        """Replace the store contents with a backup.

        Raises:
            BackupNotFound: If the backup file does not exist.
        """
        async with self._maintenance_lock:
            await run_in_threadpool(self.database.restore, backup_path)
            self.statistics.clear_cache()
        logger.info("Data restored from {}", backup_path)

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    async def export_stats(
        self,
        period: Union[Period, str],
        date: Any,
        path: Union[Path, str],
        format: ExportFormat = "jsonl",
    ) -> Path:
        """Export the key breakdown of a period with percentages."""
        stats = await self.statistics.get_period_stats(period, date)
        return await run_in_threadpool(export_stats, stats.breakdown, path, format)

    async def export_range(
        self,
        start: Any,
        end: Any,
        path: Union[Path, str],
        format: ExportFormat = "jsonl",
    ) -> Path:
        """Export the raw records with timestamp in [start, end]."""
        records = await run_in_threadpool(self.database.get_by_range, start, end)
        return await run_in_threadpool(export_records, records, path, format)
