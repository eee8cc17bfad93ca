"""Export of records and key statistics to files.

Two formats are supported:

- ``jsonl``: one JSON object per line, all fields preserved.
- ``csv``: fixed header row, text fields quoted with embedded quotes doubled.

Record CSV layout::

    id,code,name,timestampMs,date,time
    1,65,"A",1699990000000,2023-11-14,19:26:40

`date` and `time` are UTC.
"""

import json
from pathlib import Path
from typing import Any, Iterable, List, Literal, Optional, Sequence

from loguru import logger

from keytally.core.errors import ExportFailed
from keytally.core.models import KeyRecord, KeyStat
from keytally.utils.datetimeutil import from_timestamp_ms, to_timestamp_ms

ExportFormat = Literal["jsonl", "csv"]
EXPORT_FORMATS = ("jsonl", "csv")

RECORDS_CSV_HEADER = "id,code,name,timestampMs,date,time"
STATS_CSV_HEADER = "name,count,percentage"


def _quote(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'


def _percentage(count: int, total: int) -> float:
    if total <= 0:
        return 0.0
    return round(count * 100.0 / total, 2)


def filter_records(
    records: Iterable[KeyRecord], start: Optional[Any] = None, end: Optional[Any] = None
) -> List[KeyRecord]:
    """Records with timestamp in the inclusive window [start, end].

    Missing bounds are open. Bounds accept epoch milliseconds or datetime input.
    """
    start_ms = None if start is None else to_timestamp_ms(start)
    end_ms = None if end is None else to_timestamp_ms(end)
    return [
        record
        for record in records
        if (start_ms is None or record.timestamp_ms >= start_ms)
        and (end_ms is None or record.timestamp_ms <= end_ms)
    ]


def records_to_jsonl(records: Iterable[KeyRecord]) -> str:
    return "".join(json.dumps(record.model_dump()) + "\n" for record in records)


def records_to_csv(records: Iterable[KeyRecord]) -> str:
    lines = [RECORDS_CSV_HEADER]
    for record in records:
        dt = from_timestamp_ms(record.timestamp_ms)
        lines.append(
            f"{record.id},{record.code},{_quote(record.name)},{record.timestamp_ms},"
            f"{dt.format('YYYY-MM-DD')},{dt.format('HH:mm:ss')}"
        )
    return "\n".join(lines) + "\n"


def stats_to_jsonl(stats: Sequence[KeyStat]) -> str:
    """Key statistics as JSON lines, each with its share of the total in percent."""
    total = sum(stat.count for stat in stats)
    return "".join(
        json.dumps(
            {"name": stat.name, "count": stat.count, "percentage": _percentage(stat.count, total)}
        )
        + "\n"
        for stat in stats
    )


def stats_to_csv(stats: Sequence[KeyStat]) -> str:
    total = sum(stat.count for stat in stats)
    lines = [STATS_CSV_HEADER]
    for stat in stats:
        lines.append(f"{_quote(stat.name)},{stat.count},{_percentage(stat.count, total)}")
    return "\n".join(lines) + "\n"


def _check_format(format: str) -> None:
    if format not in EXPORT_FORMATS:
        raise ExportFailed(f"Unsupported export format '{format}', use one of {EXPORT_FORMATS}")


def _write(path: Path, content: str) -> Path:
    path = Path(path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    except OSError as e:
        logger.error("Export to {} failed: {}", path, e)
        raise ExportFailed(f"Failed to export to '{path}': {e}") from e
    return path


def export_records(
    records: Iterable[KeyRecord],
    path: Path | str,
    format: ExportFormat = "jsonl",
    start: Optional[Any] = None,
    end: Optional[Any] = None,
) -> Path:
    """Write records, optionally restricted to [start, end], to `path`.

    Returns:
        The written file path.

    Raises:
        ExportFailed: On an unknown format or if the file can not be written.
    """
    _check_format(format)
    selected = filter_records(records, start, end)
    content = records_to_csv(selected) if format == "csv" else records_to_jsonl(selected)
    written = _write(Path(path), content)
    logger.info("Exported {} records to {}", len(selected), written)
    return written


def export_stats(stats: Sequence[KeyStat], path: Path | str, format: ExportFormat = "jsonl") -> Path:
    """Write key statistics with percentages to `path`.

    Raises:
        ExportFailed: On an unknown format or if the file can not be written.
    """
    _check_format(format)
    content = stats_to_csv(stats) if format == "csv" else stats_to_jsonl(stats)
    written = _write(Path(path), content)
    logger.info("Exported {} key statistics to {}", len(stats), written)
    return written
