"""Data models of KeyTally.

Events arrive from the input hook as `KeyEvent`. The store turns them into
`KeyRecord` rows with UTC derived calendar fields. Everything else here is an
aggregate derived on query and never persisted.
"""

from enum import Enum
from pathlib import Path
from typing import Any, Optional

from pendulum import DateTime
from pydantic import ConfigDict, Field, model_validator

from keytally.core.pydantic import PydanticBaseModel


class Period(str, Enum):
    """Time bucket size used for aggregation."""

    DAY = "day"
    MONTH = "month"
    YEAR = "year"


class KeyEvent(PydanticBaseModel):
    """Event as produced by the external input hook."""

    model_config = ConfigDict(frozen=True)

    code: int = Field(..., description="Raw key code.")
    name: str = Field(..., description="Resolved key name, treated as an opaque label.")
    timestamp_ms: int = Field(..., description="Epoch milliseconds of the event.")

    @model_validator(mode="before")
    @classmethod
    def accept_aliases(cls, data: Any) -> Any:
        """Accept the camelCase keys of the input hook."""
        if isinstance(data, dict):
            data = dict(data)
            for alias, field_name in (
                ("keyCode", "code"),
                ("keyName", "name"),
                ("timestamp", "timestamp_ms"),
                ("timestampMs", "timestamp_ms"),
            ):
                if alias in data and field_name not in data:
                    data[field_name] = data.pop(alias)
        return data


class KeyRecord(PydanticBaseModel):
    """Persisted event."""

    id: int
    code: int
    name: str
    timestamp_ms: int
    day_key: str = Field(..., description="Calendar date YYYY-MM-DD (UTC).")
    hour: int = Field(..., ge=0, le=23, description="Hour of the day (UTC).")

    def to_event(self) -> KeyEvent:
        return KeyEvent(code=self.code, name=self.name, timestamp_ms=self.timestamp_ms)


class KeyStat(PydanticBaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    count: int


class DayCount(PydanticBaseModel):
    model_config = ConfigDict(frozen=True)

    date: DateTime
    count: int


class MonthCount(PydanticBaseModel):
    model_config = ConfigDict(frozen=True)

    month: int = Field(..., ge=1, le=12)
    count: int


class DailyStats(PydanticBaseModel):
    """Aggregate of a single UTC day."""

    model_config = ConfigDict(frozen=True)

    date: DateTime
    total_count: int
    breakdown: list[KeyStat] = Field(default_factory=list)


class MonthlyStats(PydanticBaseModel):
    """Aggregate of a calendar month, with one trend entry per day."""

    model_config = ConfigDict(frozen=True)

    year: int
    month: int = Field(..., ge=1, le=12)
    total_count: int
    breakdown: list[KeyStat] = Field(default_factory=list)
    trend: list[DayCount] = Field(default_factory=list)


class YearlyStats(PydanticBaseModel):
    """Aggregate of a calendar year, with one trend entry per month."""

    model_config = ConfigDict(frozen=True)

    year: int
    total_count: int
    breakdown: list[KeyStat] = Field(default_factory=list)
    trend: list[MonthCount] = Field(default_factory=list)


class Backup(PydanticBaseModel):
    path: Path
    created_at_ms: int


class StoreSummary(PydanticBaseModel):
    """Whole store diagnostics."""

    total_count: int = 0
    oldest_ms: Optional[int] = None
    newest_ms: Optional[int] = None
    unique_names: int = 0
