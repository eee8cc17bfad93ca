"""Utility for configuring Loguru loggers."""

import json
import logging as pylogging
import os
import sys
from pathlib import Path
from types import FrameType
from typing import Any, List, Optional

from loguru import logger

from keytally.core.logabc import LOGGING_LEVELS


class InterceptHandler(pylogging.Handler):
    """A logging handler that redirects standard Python logging messages to Loguru.

    This handler ensures consistency between the `logging` module and Loguru by
    intercepting logs sent to the standard logging system and re-emitting them
    through Loguru with proper context (including exception info and call depth).

    Attributes:
        loglevel_mapping (dict): Mapping from standard logging levels to Loguru level names.
    """

    loglevel_mapping: dict[int, str] = {
        50: "CRITICAL",
        40: "ERROR",
        30: "WARNING",
        20: "INFO",
        10: "DEBUG",
        5: "TRACE",
        0: "NOTSET",
    }

    def emit(self, record: pylogging.LogRecord) -> None:
        """Emits a logging record by forwarding it to Loguru with preserved metadata.

        Args:
            record (logging.LogRecord): A record object containing log message and metadata.
        """
        # asyncio debug chatter is not of interest
        if record.name.startswith("asyncio") and record.levelno <= pylogging.DEBUG:
            return

        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = self.loglevel_mapping.get(record.levelno, "INFO")

        frame: Optional[FrameType] = pylogging.currentframe()
        depth: int = 2
        while frame and frame.f_code.co_filename == pylogging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


console_handler_id = None
file_handler_id = None


def configure_logging(config_keytally: Any) -> None:
    """(Re-)configure the loguru handlers from the logging settings.

    Always installs a console handler. A JSON serialised file handler is added
    when a file level is configured. Standard library logging is redirected to
    loguru.

    Args:
        config_keytally: The KeyTally configuration.
    """
    global console_handler_id, file_handler_id

    settings = config_keytally.logging
    if not settings.console_level:
        # No value given - check environment value - may also be None
        settings.console_level = os.getenv("KEYTALLY_LOGGING__LEVEL")
    if not settings.file_level:
        settings.file_level = os.getenv("KEYTALLY_LOGGING__LEVEL")

    # Remove handlers
    for handler_id in (console_handler_id, file_handler_id):
        if handler_id is not None:
            try:
                logger.remove(handler_id)
            except ValueError as e:
                logger.debug("Exception on logger.remove: {}", e)
    console_handler_id = None
    file_handler_id = None

    console_level = settings.console_level or "INFO"
    if console_level not in LOGGING_LEVELS:
        logger.error("Invalid console log level '{}' - forced to INFO.", console_level)
        console_level = "INFO"

    console_handler_id = logger.add(
        sys.stderr,
        enqueue=True,
        backtrace=True,
        level=console_level,
    )

    file_path = log_file_path(config_keytally)
    if settings.file_level and file_path is not None:
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler_id = logger.add(
            sink=file_path,
            rotation="100 MB",
            retention="3 days",
            enqueue=True,
            backtrace=True,
            level=settings.file_level,
            serialize=True,  # JSON dict formatting
        )

    # Redirect standard logging to Loguru
    pylogging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    logger.info(
        "Logger reconfigured - console: {}, file: {}.", console_level, settings.file_level
    )


def log_file_path(config_keytally: Any) -> Optional[Path]:
    """Absolute path of the log file, or None if it can not be determined."""
    file_name = config_keytally.logging.file_name
    if file_name is None:
        return None
    file_name = Path(file_name)
    if file_name.is_absolute():
        return file_name
    data_folder = config_keytally.general.data_folder_path
    if data_folder is None:
        return None
    return Path(data_folder) / file_name


def read_file_log(
    log_path: Path,
    limit: int = 50,
    level: Optional[str] = None,
    contains: Optional[str] = None,
) -> List[dict]:
    """Read the most recent structured log entries from a JSON-formatted log file.

    Args:
        log_path (Path): Path to the JSON-formatted log file.
        limit (int, optional): Maximum number of log entries to return. Defaults to 50.
        level (Optional[str], optional): Filter logs by log level (e.g., "ERROR").
        contains (Optional[str], optional): Filter logs that contain this substring in
            their message. Case-insensitive.

    Returns:
        List[dict]: The newest matching entries, oldest first.

    Raises:
        FileNotFoundError: If the log file does not exist.
    """
    if not log_path.exists():
        raise FileNotFoundError(f"Log file not found: {log_path}")

    matched: List[dict] = []
    with log_path.open("r", encoding="utf-8") as f_txt:
        for line in f_txt:
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                continue
            record = entry.get("record", entry)
            if level and record.get("level", {}).get("name") != level.upper():
                continue
            message = record.get("message", "")
            if contains and contains.lower() not in message.lower():
                continue
            matched.append(entry)

    return matched[-limit:] if limit > 0 else []
