"""Exception types raised by KeyTally.

The store surfaces all of these to its callers. The ingestion buffer is the only
component that absorbs an error, and only `WriteFailed`, which it retries.
"""


class KeyTallyError(Exception):
    """Base class for all KeyTally errors."""


class NotInitialized(KeyTallyError, RuntimeError):
    """Operation attempted before the store was opened."""


class StoreError(KeyTallyError):
    """Store operation failed."""


class WriteFailed(StoreError, OSError):
    """A batch could not be written to the store. Transient, may be retried."""


class BackupNotFound(StoreError, FileNotFoundError):
    """Restore target does not exist."""


class InvalidPeriod(KeyTallyError, ValueError):
    """Period outside of the valid range, e.g. month not in 1..12."""


class ExportFailed(KeyTallyError):
    """Export file could not be written."""
