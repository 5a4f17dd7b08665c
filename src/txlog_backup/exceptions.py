"""Exception types raised by the backup, storage and recovery components."""


class BackupError(Exception):
    """Base class for all transaction-log backup errors."""


class ChainReaderError(BackupError):
    """The chain node could not be reached or returned an unusable response."""


class SegmentStoreError(BackupError):
    """Segment or cursor storage could not be read or written."""


class SegmentNotFoundError(SegmentStoreError):
    """A requested segment does not exist in the store."""


class CursorCorruptedError(SegmentStoreError):
    """The persisted cursor record exists but cannot be decoded."""


class NoDataError(BackupError):
    """An operation that needs stored transactions found none."""


class MonitorNotRunningError(BackupError):
    """No live monitor process was found to signal."""
