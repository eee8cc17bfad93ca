"""Utility functions for date-time conversion tasks.

All calendar arithmetic of KeyTally is done in UTC so that day and month
boundaries do not move when the machine timezone changes.

Functions:
----------
- to_datetime: Converts various date or time inputs to a timezone-aware `DateTime`
  object or formatted string.
- to_timestamp_ms / from_timestamp_ms: Convert between epoch milliseconds and `DateTime`.
- day_key / hour_of_day: Calendar fields derived from epoch milliseconds.
- days_in_month / period_day_range: Calendar period helpers.

Example usage:
--------------

    >>> day_key(1700000000000)
    '2023-11-14'

    >>> period_day_range("month", to_datetime("2024-02-10"))
    ('2024-02-01', '2024-02-29')
"""

from datetime import date, datetime
from typing import Any, Optional, Union

import pendulum
from loguru import logger
from pendulum import DateTime
from pendulum.tz.timezone import Timezone

DAY_KEY_FORMAT = "YYYY-MM-DD"


def to_datetime(
    date_input: Optional[Any] = None,
    as_string: Optional[Union[str, bool]] = None,
    in_timezone: Optional[Union[str, Timezone]] = None,
    to_maxtime: Optional[bool] = None,
) -> Union[DateTime, str]:
    """Convert a date input into a Pendulum DateTime object or a formatted string.

    Args:
        date_input (Optional[Any]): The date input to convert. Supported types include:
            - `str`: A date string (e.g. "2024-10-13", "2024-10-13T15:30:00+02:00").
            - `pendulum.DateTime`: A Pendulum DateTime object.
            - `datetime.datetime`: A standard Python datetime object. Naive values are UTC.
            - `datetime.date`: Converted to a datetime at the start or end of the day.
            - `int` or `float`: A Unix timestamp, interpreted as seconds since the epoch (UTC).
            - `None`: Defaults to the current date, at the start or end of the day based
              on `to_maxtime`.

        as_string (Optional[Union[str, bool]]): Determines the output format:
            - `True`: Returns the datetime in ISO 8601 string format.
            - `"UTC"` or `"utc"`: Returns the datetime normalized to UTC as an ISO 8601 string.
            - `str`: A custom date format string for the output (e.g., "YYYY-MM-DD HH:mm:ss").
            - `False` or `None` (default): Returns a `pendulum.DateTime` object.

        in_timezone (Optional[Union[str, Timezone]]): Target timezone for the result.
            Defaults to UTC.

        to_maxtime (Optional[bool]): For date only inputs set the time to the end
            of the day (23:59:59.999999) instead of the start of the day.

    Returns:
        pendulum.DateTime or str

    Raises:
        ValueError: If `date_input` is not a valid or supported type, or if the date
            string cannot be parsed.

    Examples:
        >>> to_datetime("2024-10-13", as_string=True)
        '2024-10-13T00:00:00Z'

        >>> to_datetime(1698784800, as_string="YYYY-MM-DD HH:mm:ss")
        '2023-10-31 20:40:00'
    """
    if in_timezone is None:
        in_timezone = pendulum.UTC
    elif not isinstance(in_timezone, Timezone):
        in_timezone = pendulum.timezone(in_timezone)

    if isinstance(date_input, DateTime):
        dt = date_input
    elif isinstance(date_input, str):
        try:
            parsed = pendulum.parse(date_input, tz=in_timezone)
        except pendulum.parsing.exceptions.ParserError as e:
            logger.debug("Date string {} does not match any Pendulum formats: {}", date_input, e)
            raise ValueError(f"Date string {date_input} does not match any known formats.") from e
        if not isinstance(parsed, DateTime):
            raise ValueError(f"Date string {date_input} does not describe a date.")
        dt = parsed
        if to_maxtime and len(date_input.strip()) == 10:
            dt = dt.end_of("day")
    elif date_input is None:
        today = pendulum.today(tz=in_timezone)
        dt = today.end_of("day") if to_maxtime else today.start_of("day")
    elif isinstance(date_input, datetime):
        dt = pendulum.instance(date_input, tz=pendulum.UTC)
    elif isinstance(date_input, date):
        dt = pendulum.datetime(date_input.year, date_input.month, date_input.day, tz=in_timezone)
        if to_maxtime:
            dt = dt.end_of("day")
    elif isinstance(date_input, (int, float)):
        dt = pendulum.from_timestamp(date_input, tz="UTC")
    else:
        error_msg = f"Unsupported date input type: {type(date_input)}"
        logger.error(error_msg)
        raise ValueError(error_msg)

    dt = dt.in_timezone(in_timezone)

    if isinstance(as_string, str):
        if as_string.lower() == "utc":
            return dt.in_timezone("UTC").to_iso8601_string()
        return dt.format(as_string)
    if isinstance(as_string, bool) and as_string is True:
        return dt.to_iso8601_string()

    return dt


def to_timestamp_ms(value: Any) -> int:
    """Convert a point in time to epoch milliseconds.

    Integers are taken to be epoch milliseconds already. All other inputs are
    converted with `to_datetime` first.
    """
    if isinstance(value, bool):
        raise ValueError(f"Unsupported timestamp input: {value!r}")
    if isinstance(value, int):
        return value
    dt = to_datetime(value)
    return int(round(dt.timestamp() * 1000))


def from_timestamp_ms(timestamp_ms: int) -> DateTime:
    """Epoch milliseconds to a UTC `DateTime`."""
    return pendulum.from_timestamp(timestamp_ms / 1000, tz="UTC")


def day_key(value: Any) -> str:
    """Calendar date string (UTC) of a timestamp or date input."""
    if isinstance(value, int) and not isinstance(value, bool):
        return from_timestamp_ms(value).format(DAY_KEY_FORMAT)
    return to_datetime(value).in_timezone("UTC").format(DAY_KEY_FORMAT)


def hour_of_day(timestamp_ms: int) -> int:
    """Hour of the day (0-23, UTC) of epoch milliseconds."""
    return from_timestamp_ms(timestamp_ms).hour


def start_of_day(value: Any) -> DateTime:
    """UTC midnight of the day the given input falls on."""
    if isinstance(value, int) and not isinstance(value, bool):
        dt = from_timestamp_ms(value)
    else:
        dt = to_datetime(value)
    return dt.in_timezone("UTC").start_of("day")


def days_in_month(year: int, month: int) -> int:
    """Number of days in the given month, leap years honoured."""
    return pendulum.datetime(year, month, 1, tz="UTC").days_in_month


def period_day_range(period: str, anchor: Any) -> tuple[str, str]:
    """First and last day key of the calendar period containing `anchor`.

    Args:
        period: One of "day", "month", "year".
        anchor: Any input accepted by `to_datetime` or epoch milliseconds.

    Returns:
        Tuple of inclusive (first, last) day keys.

    Raises:
        ValueError: On an unknown period.
    """
    dt = start_of_day(anchor)
    if period == "day":
        key = dt.format(DAY_KEY_FORMAT)
        return key, key
    if period == "month":
        first = dt.start_of("month")
        last = dt.end_of("month")
    elif period == "year":
        first = dt.start_of("year")
        last = dt.end_of("year")
    else:
        raise ValueError(f"Unknown period '{period}'")
    return first.format(DAY_KEY_FORMAT), last.format(DAY_KEY_FORMAT)
