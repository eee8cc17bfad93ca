"""Tests for period aggregation and the TTL cache."""

import random
from unittest.mock import patch

import pendulum
import pytest
from conftest import BASE_MS, HOUR_MS
from pydantic import ValidationError

from keytally.core.errors import InvalidPeriod
from keytally.core.models import DailyStats, KeyStat, MonthlyStats, YearlyStats
from keytally.core.statistics import CacheEntry, StatisticsService, TTLCache
from keytally.utils.datetimeutil import to_timestamp_ms


class FakeClock:
    def __init__(self, now_ms: int = 0) -> None:
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(BASE_MS)


@pytest.fixture
def statistics(database, clock) -> StatisticsService:
    return StatisticsService(database, ttl=300, clock=clock)


def ms(iso: str) -> int:
    return to_timestamp_ms(iso)


# ==================== TTLCache ====================


class TestTTLCache:
    def test_get_put(self, clock):
        cache = TTLCache(1000, clock=clock)
        assert cache.get("a") is None
        entry = cache.put("a", 42)
        assert isinstance(entry, CacheEntry)
        assert entry.expires_at_ms == BASE_MS + 1000
        assert cache.get("a") == 42
        assert "a" in cache
        assert cache.stats() == {"entries": 1, "hits": 1, "misses": 1}

    def test_expiry_checked_on_read(self, clock):
        cache = TTLCache(1000, clock=clock)
        cache.put("a", 1)
        clock.advance(999)
        assert cache.get("a") == 1
        clock.advance(1)
        assert "a" not in cache
        assert cache.get("a") is None
        assert len(cache) == 0

    def test_invalidate_and_clear(self, clock):
        cache = TTLCache(1000, clock=clock)
        cache.put("a", 1)
        cache.put("b", 2)
        assert cache.invalidate("a") is True
        assert cache.invalidate("a") is False
        assert cache.get("b") == 2
        cache.clear()
        assert cache.get("b") is None

    def test_put_from_older_generation_is_dropped(self, clock):
        cache = TTLCache(1000, clock=clock)
        generation = cache.generation
        cache.clear()
        assert cache.generation == generation + 1
        assert cache.put("a", 1, generation=generation) is None
        assert "a" not in cache
        assert cache.put("a", 2, generation=cache.generation) is not None
        assert cache.get("a") == 2

    def test_default_clock(self):
        cache = TTLCache(60_000)
        cache.put("a", 1)
        assert cache.get("a") == 1


# ==================== StatisticsService ====================


class TestDailyStats:
    @pytest.mark.asyncio
    async def test_example_day(self, database, statistics, make_event):
        database.save(
            [
                make_event("A", BASE_MS),
                make_event("A", BASE_MS + HOUR_MS),
                make_event("B", BASE_MS + 2 * HOUR_MS),
            ]
        )
        stats = await statistics.get_daily_stats(BASE_MS)
        assert isinstance(stats, DailyStats)
        assert stats.date == pendulum.datetime(2023, 11, 14, tz="UTC")
        assert stats.total_count == 3
        assert stats.breakdown == [KeyStat(name="A", count=2), KeyStat(name="B", count=1)]

    @pytest.mark.asyncio
    async def test_empty_day(self, statistics):
        stats = await statistics.get_daily_stats("2020-01-01")
        assert stats.total_count == 0
        assert stats.breakdown == []

    @pytest.mark.asyncio
    async def test_normalises_to_utc_day(self, database, statistics, make_event):
        database.save([make_event("A", BASE_MS)])
        first = await statistics.get_daily_stats("2023-11-14T03:00:00Z")
        second = await statistics.get_daily_stats("2023-11-15T01:00:00+02:00")
        assert first == second
        assert statistics.cache.stats()["hits"] == 1
        assert StatisticsService.daily_key(first.date) in statistics.cache

    @pytest.mark.asyncio
    async def test_cached_until_ttl(self, database, statistics, clock, make_event):
        database.save([make_event("A", BASE_MS)])
        with patch.object(
            database, "get_stats_by_period", wraps=database.get_stats_by_period
        ) as spy:
            first = await statistics.get_daily_stats(BASE_MS)
            database.save([make_event("B", BASE_MS)])
            second = await statistics.get_daily_stats(BASE_MS)
            assert second == first
            assert spy.call_count == 1

            clock.advance(300_000)
            third = await statistics.get_daily_stats(BASE_MS)
            assert spy.call_count == 2
        assert third.total_count == 2

    @pytest.mark.asyncio
    async def test_clear_cache_forces_recompute(self, database, statistics, make_event):
        database.save([make_event("A", BASE_MS)])
        assert (await statistics.get_daily_stats(BASE_MS)).total_count == 1
        database.save([make_event("A", BASE_MS)])
        statistics.clear_cache()
        assert (await statistics.get_daily_stats(BASE_MS)).total_count == 2

    @pytest.mark.asyncio
    async def test_result_from_before_a_store_change_is_not_cached(
        self, database, clock, make_event
    ):
        class ConcurrentFlushStatistics(StatisticsService):
            flushed = False

            def _compute_daily(self, day):
                stats = super()._compute_daily(day)
                if not self.flushed:
                    # a flush commits and clears the cache while this result is built
                    self.flushed = True
                    database.save([make_event("A", BASE_MS)])
                    self.clear_cache()
                return stats

        statistics = ConcurrentFlushStatistics(database, ttl=300, clock=clock)
        first = await statistics.get_daily_stats(BASE_MS)
        assert first.total_count == 0
        assert StatisticsService.daily_key(first.date) not in statistics.cache

        second = await statistics.get_daily_stats(BASE_MS)
        assert second.total_count == 1
        assert StatisticsService.daily_key(second.date) in statistics.cache

    @pytest.mark.asyncio
    async def test_callers_do_not_share_cached_results(self, database, statistics, make_event):
        database.save([make_event(name, BASE_MS) for name in "AAB"])
        first = await statistics.get_daily_stats(BASE_MS)
        first.breakdown.clear()
        with pytest.raises(ValidationError):
            first.total_count = 0

        second = await statistics.get_daily_stats(BASE_MS)
        assert statistics.cache.stats()["hits"] == 1
        assert second.total_count == 3
        assert second.breakdown == [KeyStat(name="A", count=2), KeyStat(name="B", count=1)]

    def test_ttl_from_config(self, database, config_keytally):
        config_keytally.merge_settings_from_dict({"statistics": {"cache_ttl_sec": 12}})
        service = StatisticsService(database)
        assert service.cache.ttl_ms == 12_000


class TestMonthlyStats:
    @pytest.mark.asyncio
    async def test_month_trend(self, database, statistics, make_event):
        database.save(
            [
                make_event("A", ms("2023-11-01T00:00:00Z")),
                make_event("A", BASE_MS),
                make_event("B", BASE_MS),
                make_event("C", ms("2023-11-30T23:59:59Z")),
                make_event("D", ms("2023-12-01T00:00:00Z")),
            ]
        )
        stats = await statistics.get_monthly_stats(2023, 11)
        assert isinstance(stats, MonthlyStats)
        assert (stats.year, stats.month) == (2023, 11)
        assert stats.total_count == 4
        assert stats.breakdown[0] == KeyStat(name="A", count=2)
        assert len(stats.trend) == 30
        assert stats.trend[0].date == pendulum.datetime(2023, 11, 1, tz="UTC")
        assert stats.trend[0].count == 1
        assert stats.trend[13].count == 2
        assert stats.trend[29].count == 1
        assert sum(day.count for day in stats.trend) == stats.total_count

    @pytest.mark.asyncio
    @pytest.mark.parametrize("year, days", [(2024, 29), (2023, 28), (2000, 29), (2100, 28)])
    async def test_february_length(self, statistics, year, days):
        stats = await statistics.get_monthly_stats(year, 2)
        assert len(stats.trend) == days

    @pytest.mark.asyncio
    async def test_leap_day_counted(self, database, statistics, make_event):
        database.save([make_event("A", ms("2024-02-29T12:00:00Z"))])
        stats = await statistics.get_monthly_stats(2024, 2)
        assert stats.trend[28].count == 1
        assert stats.total_count == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize("month", [0, 13, -1])
    async def test_invalid_month(self, statistics, month):
        with pytest.raises(InvalidPeriod):
            await statistics.get_monthly_stats(2023, month)
        with pytest.raises(ValueError):
            await statistics.get_monthly_stats(2023, month)


class TestYearlyStats:
    @pytest.mark.asyncio
    async def test_year_trend(self, database, statistics, make_event):
        database.save(
            [
                make_event("A", ms("2023-01-01T00:00:00Z")),
                make_event("B", ms("2023-06-15T12:00:00Z")),
                make_event("B", ms("2023-06-16T12:00:00Z")),
                make_event("C", ms("2023-12-31T23:59:59Z")),
                make_event("D", ms("2024-01-01T00:00:00Z")),
            ]
        )
        stats = await statistics.get_yearly_stats(2023)
        assert isinstance(stats, YearlyStats)
        assert stats.total_count == 4
        assert [m.month for m in stats.trend] == list(range(1, 13))
        assert [m.count for m in stats.trend] == [1, 0, 0, 0, 0, 2, 0, 0, 0, 0, 0, 1]
        assert stats.breakdown[0] == KeyStat(name="B", count=2)


class TestAggregationIdentity:
    @pytest.mark.asyncio
    async def test_totals_match_breakdown_and_trend(self, database, statistics, make_event):
        rng = random.Random(42)
        start = ms("2024-01-01T00:00:00Z")
        year_ms = ms("2025-01-01T00:00:00Z") - start
        events = [
            make_event(rng.choice("ABCDEFG"), start + rng.randrange(year_ms)) for _ in range(500)
        ]
        database.save(events)

        yearly = await statistics.get_yearly_stats(2024)
        assert yearly.total_count == 500
        assert yearly.total_count == sum(stat.count for stat in yearly.breakdown)
        assert yearly.total_count == sum(month.count for month in yearly.trend)

        for month in range(1, 13):
            monthly = await statistics.get_monthly_stats(2024, month)
            assert monthly.total_count == sum(stat.count for stat in monthly.breakdown)
            assert monthly.total_count == sum(day.count for day in monthly.trend)
            assert monthly.total_count == yearly.trend[month - 1].count
            breakdown = monthly.breakdown
            assert all(a.count >= b.count for a, b in zip(breakdown, breakdown[1:]))


class TestTopKeys:
    @pytest.mark.asyncio
    async def test_top_keys(self, database, statistics, make_event):
        database.save(
            [make_event("A", BASE_MS)] * 3 + [make_event("B", BASE_MS)] * 2 + [make_event("C", BASE_MS)]
        )
        assert await statistics.get_top_keys("day", BASE_MS, 1) == [KeyStat(name="A", count=3)]
        assert [s.name for s in await statistics.get_top_keys("month", BASE_MS, 10)] == [
            "A",
            "B",
            "C",
        ]
        assert await statistics.get_top_keys("year", BASE_MS, 0) == []

    @pytest.mark.asyncio
    async def test_negative_limit(self, statistics):
        with pytest.raises(ValueError):
            await statistics.get_top_keys("day", BASE_MS, -1)

    @pytest.mark.asyncio
    async def test_unknown_period(self, statistics):
        with pytest.raises(InvalidPeriod):
            await statistics.get_period_stats("week", BASE_MS)


def test_cache_keys():
    assert StatisticsService.daily_key(pendulum.datetime(1970, 1, 2, tz="UTC")) == "daily:1"
    assert StatisticsService.monthly_key(2024, 2) == "monthly:2024:2"
    assert StatisticsService.yearly_key(2024) == "yearly:2024"
