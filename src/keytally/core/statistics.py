"""Period aggregation with a time-to-live cache.

`StatisticsService` computes day, month and year rollups from the durable store
and memoizes them in a `TTLCache`. Cache keys are per query shape:

- ``daily:<epoch-day>``
- ``monthly:<year>:<month>``
- ``yearly:<year>``

so unrelated periods never collide. The whole cache is dropped whenever the
store content changes (flush, clear, restore).

Example usage:
--------------
    >>> statistics = StatisticsService(database)
    >>> stats = await statistics.get_daily_stats("2023-11-14")
    >>> stats.total_count
    3
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

import pendulum
from loguru import logger
from pendulum import DateTime
from pydantic import Field
from starlette.concurrency import run_in_threadpool

from keytally.config.configabc import SettingsBaseModel
from keytally.core.coreabc import ConfigMixin
from keytally.core.database import KeystrokeDatabase
from keytally.core.errors import InvalidPeriod
from keytally.core.models import (
    DailyStats,
    DayCount,
    KeyStat,
    MonthCount,
    MonthlyStats,
    Period,
    YearlyStats,
)
from keytally.core.pydantic import PydanticBaseModel
from keytally.utils.datetimeutil import (
    DAY_KEY_FORMAT,
    days_in_month,
    start_of_day,
    to_timestamp_ms,
)

T = TypeVar("T")

MS_PER_DAY = 86_400_000


class StatisticsCommonSettings(SettingsBaseModel):
    """Aggregation cache configuration."""

    cache_ttl_sec: float = Field(
        default=300.0,
        ge=0,
        json_schema_extra={
            "description": "Time a computed aggregate is served from cache [seconds].",
            "examples": [300.0],
        },
    )


def now_ms() -> int:
    """Current time in epoch milliseconds."""
    return to_timestamp_ms(pendulum.now("UTC"))


class CacheEntry(PydanticBaseModel, Generic[T]):
    value: T = Field(..., description="Memoized query result.")
    expires_at_ms: int = Field(..., description="Epoch milliseconds the entry turns stale.")

    def is_valid(self, at_ms: int) -> bool:
        return at_ms < self.expires_at_ms


class TTLCache:
    """Thread-safe in-memory key-value store with a fixed time-to-live.

    Expiry is checked lazily on read; stale entries are removed when hit.
    `generation` counts `clear` calls. A `put` that names an older generation
    is dropped, so a value computed before a clear never enters the cache.

    Args:
        ttl_ms: Lifetime of an entry in milliseconds.
        clock: Returns the current time in epoch milliseconds.
    """

    def __init__(self, ttl_ms: int, clock: Optional[Callable[[], int]] = None) -> None:
        self.ttl_ms = ttl_ms
        self._clock = clock or now_ms
        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()
        self.hits = 0
        self.misses = 0
        self.generation = 0

    def get(self, key: str) -> Optional[Any]:
        """Cached value of `key`, or None if absent or expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is not None and entry.is_valid(self._clock()):
                self.hits += 1
                return entry.value
            if entry is not None:
                del self._entries[key]
            self.misses += 1
            return None

    def put(self, key: str, value: Any, generation: Optional[int] = None) -> Optional[CacheEntry]:
        with self._lock:
            if generation is not None and generation != self.generation:
                return None
            entry = CacheEntry(value=value, expires_at_ms=self._clock() + self.ttl_ms)
            self._entries[key] = entry
            return entry

    def invalidate(self, key: str) -> bool:
        """Drop one entry. Returns True if it existed."""
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self.generation += 1

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            entry = self._entries.get(key)
            return entry is not None and entry.is_valid(self._clock())

    def stats(self) -> Dict[str, int]:
        """Hit/miss counters and number of stored entries."""
        with self._lock:
            return {"entries": len(self._entries), "hits": self.hits, "misses": self.misses}


class StatisticsService(ConfigMixin):
    """Cached day, month and year rollups over a `KeystrokeDatabase`.

    Each rollup is computed in a single worker thread call that holds the store
    lock, so its breakdown and trend describe the same store state.

    Args:
        database: Store the aggregates are computed from.
        ttl: Cache lifetime in seconds. Defaults to `statistics.cache_ttl_sec`.
        clock: Millisecond clock used for cache expiry.
    """

    def __init__(
        self,
        database: KeystrokeDatabase,
        ttl: Optional[float] = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        if ttl is None:
            ttl = self.config.statistics.cache_ttl_sec
        self._database = database
        self.cache = TTLCache(int(ttl * 1000), clock=clock)

    # ------------------------------------------------------------------
    # Cache keys
    # ------------------------------------------------------------------

    @staticmethod
    def daily_key(day: DateTime) -> str:
        return f"daily:{to_timestamp_ms(day) // MS_PER_DAY}"

    @staticmethod
    def monthly_key(year: int, month: int) -> str:
        return f"monthly:{year}:{month}"

    @staticmethod
    def yearly_key(year: int) -> str:
        return f"yearly:{year}"

    # ------------------------------------------------------------------
    # Computation, runs in a worker thread
    # ------------------------------------------------------------------

    def _compute_daily(self, day: DateTime) -> DailyStats:
        with self._database.lock:
            breakdown = self._database.get_stats_by_period(Period.DAY, day)
        return DailyStats(
            date=day,
            total_count=sum(stat.count for stat in breakdown),
            breakdown=breakdown,
        )

    def _compute_monthly(self, year: int, month: int) -> MonthlyStats:
        first = pendulum.datetime(year, month, 1, tz="UTC")
        with self._database.lock:
            breakdown = self._database.get_stats_by_period(Period.MONTH, first)
            trend = []
            for offset in range(days_in_month(year, month)):
                day = first.add(days=offset)
                key = day.format(DAY_KEY_FORMAT)
                trend.append(
                    DayCount(date=day, count=self._database.count_by_day_range(key, key))
                )
        return MonthlyStats(
            year=year,
            month=month,
            total_count=sum(stat.count for stat in breakdown),
            breakdown=breakdown,
            trend=trend,
        )

    def _compute_yearly(self, year: int) -> YearlyStats:
        first = pendulum.datetime(year, 1, 1, tz="UTC")
        with self._database.lock:
            breakdown = self._database.get_stats_by_period(Period.YEAR, first)
            trend = []
            for month in range(1, 13):
                month_start = pendulum.datetime(year, month, 1, tz="UTC")
                trend.append(
                    MonthCount(
                        month=month,
                        count=self._database.count_by_day_range(
                            month_start.format(DAY_KEY_FORMAT),
                            month_start.end_of("month").format(DAY_KEY_FORMAT),
                        ),
                    )
                )
        return YearlyStats(
            year=year,
            total_count=sum(stat.count for stat in breakdown),
            breakdown=breakdown,
            trend=trend,
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def _cached(self, key: str, compute: Callable[..., Any], *args: Any) -> Any:
        stats = self.cache.get(key)
        if stats is None:
            generation = self.cache.generation
            stats = await run_in_threadpool(compute, *args)
            self.cache.put(key, stats, generation=generation)
        # callers never share the cached instance
        return stats.model_copy(deep=True)

    async def get_daily_stats(self, date: Any) -> DailyStats:
        """Aggregate of the UTC day containing `date`."""
        day = start_of_day(date)
        return await self._cached(self.daily_key(day), self._compute_daily, day)

    async def get_monthly_stats(self, year: int, month: int) -> MonthlyStats:
        """Aggregate of a calendar month with one trend entry per day.

        Raises:
            InvalidPeriod: If `month` is not in 1..12.
        """
        if not 1 <= month <= 12:
            raise InvalidPeriod(f"Month must be in 1..12, got {month}")
        return await self._cached(self.monthly_key(year, month), self._compute_monthly, year, month)

    async def get_yearly_stats(self, year: int) -> YearlyStats:
        """Aggregate of a calendar year with one trend entry per month."""
        return await self._cached(self.yearly_key(year), self._compute_yearly, year)

    async def get_period_stats(
        self, period: Period | str, date: Any
    ) -> DailyStats | MonthlyStats | YearlyStats:
        """Aggregate of the period of the given granularity containing `date`."""
        try:
            period = Period(period)
        except ValueError as e:
            raise InvalidPeriod(f"Unknown period '{period}'") from e
        day = start_of_day(date)
        if period == Period.DAY:
            return await self.get_daily_stats(day)
        if period == Period.MONTH:
            return await self.get_monthly_stats(day.year, day.month)
        return await self.get_yearly_stats(day.year)

    async def get_top_keys(self, period: Period | str, date: Any, limit: int) -> List[KeyStat]:
        """First `limit` entries of the period breakdown, most frequent first.

        Raises:
            ValueError: If `limit` is negative.
        """
        if limit < 0:
            raise ValueError(f"limit must not be negative, got {limit}")
        stats = await self.get_period_stats(period, date)
        return list(stats.breakdown[:limit])

    def clear_cache(self, *_: Any) -> None:
        """Drop all memoized aggregates.

        Accepts and ignores arguments so it can be registered directly as a
        flush listener.
        """
        self.cache.clear()
        logger.debug("Statistics cache cleared")
