#!/usr/bin/env python3
"""Durable storage of backup segments and the backup cursor.

Segments are immutable once written. Their identifiers embed the last block
height and the creation timestamp; listing orders them by creation time, then
by block. The cursor is a single JSON record per network.
"""

import asyncio
import json
import logging
import os
import re
import tempfile
import time
from collections.abc import Iterable
from pathlib import Path
from typing import Any, Protocol

import cbor2

from .exceptions import CursorCorruptedError, SegmentNotFoundError, SegmentStoreError
from .models import BackupCursor, BackupSegment, TransactionRecord

# Get logger for this module
logger = logging.getLogger(__name__)

METADATA_FILE = "backup-metadata.json"
SEGMENT_PATTERN = re.compile(r"^backup-(\d+)-(\d+)\.([a-z]+)$")
BLOCK_DIGITS = 12


class SegmentCodec(Protocol):
    """Serialization format of a segment file."""

    extension: str

    def encode(self, data: dict[str, Any]) -> bytes: ...

    def decode(self, raw: bytes) -> dict[str, Any]: ...


class JsonSegmentCodec:
    """Human-readable JSON segments."""

    extension = "json"

    def encode(self, data: dict[str, Any]) -> bytes:
        return json.dumps(data, indent=2).encode("utf-8")

    def decode(self, raw: bytes) -> dict[str, Any]:
        return json.loads(raw.decode("utf-8"))


class CborSegmentCodec:
    """Compact binary segments."""

    extension = "cbor"

    def encode(self, data: dict[str, Any]) -> bytes:
        return cbor2.dumps(data)

    def decode(self, raw: bytes) -> dict[str, Any]:
        decoded = cbor2.loads(raw)
        if not isinstance(decoded, dict):
            raise ValueError(f"Expected a CBOR map, got {type(decoded).__name__}")
        return decoded


CODECS: dict[str, SegmentCodec] = {
    "json": JsonSegmentCodec(),
    "cbor": CborSegmentCodec(),
}


def get_codec(segment_format: str) -> SegmentCodec:
    """
    Look up a segment codec by format name.

    Raises:
        ValueError: If the format is not supported
    """
    try:
        return CODECS[segment_format]
    except KeyError:
        raise ValueError(
            f"Unsupported segment format: {segment_format}. "
            f"Supported formats: {', '.join(sorted(CODECS))}"
        ) from None


def make_segment_id(last_block: int, timestamp_ms: int, extension: str) -> str:
    """Build a segment id from its last block and creation time."""
    return f"backup-{last_block:0{BLOCK_DIGITS}d}-{timestamp_ms}.{extension}"


def parse_segment_id(segment_id: str) -> tuple[int, int, str]:
    """
    Split a segment id into (last block, timestamp ms, extension).

    Raises:
        ValueError: If the id is not a segment id
    """
    match = SEGMENT_PATTERN.match(segment_id)
    if not match:
        raise ValueError(f"Not a segment id: {segment_id}")
    return int(match.group(1)), int(match.group(2)), match.group(3)


def creation_order(segment_id: str) -> tuple[int, int]:
    """Sort key of a segment id: creation time, then last block."""
    last_block, timestamp_ms, _ = parse_segment_id(segment_id)
    return timestamp_ms, last_block


def atomic_write(path: Path, payload: bytes) -> None:
    """Write a file so readers see either the old or the complete new content."""
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(payload)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


class SegmentStore:
    """
    Append-only segment log plus the backup cursor for one network.

    Segment files of any supported format are listed and read; new segments
    use the configured codec. ``lock`` must be held by retention and by
    anything that lists and then reads segments, so a deletion never races a
    read.
    """

    def __init__(
        self,
        backup_dir: Path,
        network: str,
        chain_id: int,
        segment_format: str = "json",
    ):
        """
        Initialize the segment store.

        Args:
            backup_dir: Root directory of all backups
            network: Network name, used as the subdirectory
            chain_id: Chain ID written into every segment and the cursor
            segment_format: Codec used for new segments ('json' or 'cbor')
        """
        self.network = network
        self.chain_id = chain_id
        self.codec = get_codec(segment_format)
        self.directory = Path(backup_dir) / network
        self.lock = asyncio.Lock()

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SegmentStoreError(f"Cannot create backup directory {self.directory}: {e}") from e

    @property
    def metadata_path(self) -> Path:
        return self.directory / METADATA_FILE

    def write_segment(
        self,
        records: Iterable[TransactionRecord],
        up_to_block: int,
        timestamp_ms: int | None = None,
    ) -> str:
        """
        Seal a batch of records as a new immutable segment.

        Args:
            records: Records in block and discovery order
            up_to_block: Highest block height covered by the batch
            timestamp_ms: Creation time; defaults to now

        Returns:
            Identifier of the written segment

        Raises:
            SegmentStoreError: If the segment cannot be written
        """
        timestamp_ms = timestamp_ms if timestamp_ms is not None else int(time.time() * 1000)
        segment_id = make_segment_id(up_to_block, timestamp_ms, self.codec.extension)
        # Never overwrite: two flushes in the same millisecond get distinct ids.
        while (self.directory / segment_id).exists():
            timestamp_ms += 1
            segment_id = make_segment_id(up_to_block, timestamp_ms, self.codec.extension)

        segment = BackupSegment(
            network=self.network,
            chain_id=self.chain_id,
            last_backup_block=up_to_block,
            transactions=tuple(records),
            backup_timestamp=timestamp_ms,
        )

        try:
            atomic_write(self.directory / segment_id, self.codec.encode(segment.to_dict()))
        except OSError as e:
            raise SegmentStoreError(f"Failed to write segment {segment_id}: {e}") from e

        logger.info(f"Saved backup segment: {segment_id} ({len(segment.transactions)} transactions)")
        return segment_id

    def list_segments(self) -> list[str]:
        """
        List segment ids in creation order (oldest first).

        Raises:
            SegmentStoreError: If the backup directory cannot be read
        """
        try:
            names = [p.name for p in self.directory.iterdir() if p.is_file()]
        except OSError as e:
            raise SegmentStoreError(f"Cannot list backup directory {self.directory}: {e}") from e

        segment_ids = [
            name for name in names
            if (m := SEGMENT_PATTERN.match(name)) and m.group(3) in CODECS
        ]
        return sorted(segment_ids, key=creation_order)

    def read_segment(self, segment_id: str) -> BackupSegment:
        """
        Read and decode one segment.

        Raises:
            SegmentNotFoundError: If the segment does not exist
            SegmentStoreError: If the segment cannot be read or decoded
        """
        try:
            _, _, extension = parse_segment_id(segment_id)
        except ValueError:
            raise SegmentNotFoundError(f"Backup segment not found: {segment_id}") from None
        codec = CODECS.get(extension)
        path = self.directory / segment_id
        if codec is None or not path.is_file():
            raise SegmentNotFoundError(f"Backup segment not found: {segment_id}")

        try:
            return BackupSegment.from_dict(codec.decode(path.read_bytes()))
        except FileNotFoundError:
            raise SegmentNotFoundError(f"Backup segment not found: {segment_id}") from None
        except (OSError, ValueError, KeyError, TypeError, cbor2.CBORDecodeError) as e:
            raise SegmentStoreError(f"Cannot read backup segment {segment_id}: {e}") from e

    def delete_segment(self, segment_id: str) -> None:
        """
        Delete one segment. Only retention cleanup calls this.

        Raises:
            SegmentNotFoundError: If the segment does not exist
            SegmentStoreError: If the segment cannot be removed
        """
        path = self.directory / segment_id
        if not SEGMENT_PATTERN.match(segment_id) or not path.is_file():
            raise SegmentNotFoundError(f"Backup segment not found: {segment_id}")
        try:
            path.unlink()
        except OSError as e:
            raise SegmentStoreError(f"Failed to delete segment {segment_id}: {e}") from e
        logger.info(f"Deleted backup segment: {segment_id}")

    def read_cursor(self) -> BackupCursor | None:
        """
        Read the persisted cursor.

        Returns:
            The cursor, or None if no backup has completed yet

        Raises:
            CursorCorruptedError: If the cursor record cannot be decoded
        """
        if not self.metadata_path.exists():
            return None
        try:
            return BackupCursor.from_dict(json.loads(self.metadata_path.read_text("utf-8")))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise CursorCorruptedError(f"Backup metadata is corrupted ({self.metadata_path}): {e}") from e

    def write_cursor(self, cursor: BackupCursor) -> None:
        """
        Persist the cursor atomically.

        Raises:
            SegmentStoreError: If the cursor cannot be written
        """
        try:
            atomic_write(self.metadata_path, json.dumps(cursor.to_dict(), indent=2).encode("utf-8"))
        except OSError as e:
            raise SegmentStoreError(f"Failed to write backup metadata: {e}") from e

    def apply_retention(self, max_files: int, keep_recent: int = 1) -> list[str]:
        """
        Delete the oldest segments until at most ``max_files`` remain.

        The newest ``keep_recent`` segments are never deleted. Callers must
        hold ``lock``.

        Args:
            max_files: Maximum number of segments to keep
            keep_recent: Number of newest segments that are always kept

        Returns:
            Ids of the deleted segments, oldest first
        """
        segment_ids = self.list_segments()
        if len(segment_ids) <= max_files:
            logger.debug("No cleanup needed")
            return []

        excess = len(segment_ids) - max(max_files, keep_recent)
        to_delete = segment_ids[:max(excess, 0)]
        for segment_id in to_delete:
            self.delete_segment(segment_id)

        logger.info(f"Cleanup completed. Deleted {len(to_delete)} old backup segments")
        return to_delete

    def describe_segments(self) -> list[dict[str, Any]]:
        """Size, transaction count and block/time markers of every segment."""
        descriptions = []
        for segment_id in self.list_segments():
            segment = self.read_segment(segment_id)
            descriptions.append({
                "id": segment_id,
                "size": (self.directory / segment_id).stat().st_size,
                "transactions": len(segment.transactions),
                "lastBackupBlock": segment.last_backup_block,
                "backupTimestamp": segment.backup_timestamp,
            })
        return descriptions

    def backup_stats(self) -> dict[str, Any]:
        """Cursor fields plus segment count and total size on disk."""
        segment_ids = self.list_segments()
        cursor = self.read_cursor()
        return {
            "network": self.network,
            "chainId": self.chain_id,
            "cursor": cursor.to_dict() if cursor else None,
            "segments": len(segment_ids),
            "totalBytes": sum((self.directory / s).stat().st_size for s in segment_ids),
            "directory": str(self.directory),
        }
