#!/usr/bin/env python3
"""Indexed, queryable store of ingested transaction records.

The primary collection is keyed by transaction hash and deduplicated on
ingestion (first write wins). The block, address and summary indices are
derived data: they are updated incrementally on ingestion and can always be
rebuilt from the primary collection alone.
"""

import json
import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

from .config import DatabaseConfig
from .exceptions import NoDataError
from .models import SearchFilter, StoreStats, TransactionRecord
from .segment_store import atomic_write

# Get logger for this module
logger = logging.getLogger(__name__)

TRANSACTIONS_FILE = "transactions.json"
INDEX_FILE = "index.json"

EXPORT_HEADERS = (
    "Block Number",
    "Transaction Hash",
    "From",
    "To",
    "Value (Wei)",
    "Gas Used",
    "Gas Price",
    "Timestamp",
    "Status",
    "Input Data",
)


@dataclass(frozen=True, slots=True)
class IngestResult:
    """Counts of one ingestion call."""
    admitted: int
    duplicates: int


def iso_timestamp(seconds: int) -> str:
    """Format a unix timestamp as UTC ISO-8601 with milliseconds."""
    moment = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def format_row(record: TransactionRecord) -> str:
    """Render one record as a comma-delimited export row."""
    escaped_input = record.input.replace('"', '""')
    return ",".join([
        str(record.block_number),
        record.transaction_hash,
        record.from_address,
        record.to_address,
        record.value,
        record.gas_used,
        record.gas_price,
        iso_timestamp(record.timestamp),
        str(record.status),
        f'"{escaped_input}"',
    ])


class DocumentStore:
    """
    Deduplicated transaction collection with block, address and summary indices.

    When a path is given the primary collection is persisted there after each
    ingestion and reloaded on construction; indices are never persisted as
    authoritative state and are rebuilt on load.
    """

    def __init__(self, path: Path | None = None):
        """
        Initialize the document store.

        Args:
            path: Directory for persisted data; None keeps the store in memory
        """
        self.path = Path(path) if path is not None else None

        # Primary collection keyed by lowercase hash, in admission order
        self._records: dict[str, TransactionRecord] = {}
        self._block_index: dict[int, list[str]] = {}
        self._address_index: dict[str, list[str]] = {}
        self._last_update: str | None = None

        if self.path is not None:
            self.path.mkdir(parents=True, exist_ok=True)
            self.load()

    @classmethod
    def from_config(cls, config: DatabaseConfig) -> "DocumentStore":
        """Create a store for the configured backend."""
        # DatabaseConfig rejects every backend other than 'json'.
        return cls(path=config.path)

    def __len__(self) -> int:
        return len(self._records)

    def _index_record(self, key: str, record: TransactionRecord) -> None:
        self._block_index.setdefault(record.block_number, []).append(key)
        for address in dict.fromkeys(record.addresses):
            self._address_index.setdefault(address, []).append(key)

    def ingest(self, records: Iterable[TransactionRecord]) -> IngestResult:
        """
        Merge records into the primary collection.

        Records whose hash is already present are dropped, so re-ingesting the
        same data leaves the store unchanged.

        Args:
            records: Records to merge

        Returns:
            IngestResult with admitted and duplicate counts
        """
        admitted = duplicates = 0
        for record in records:
            key = record.transaction_hash.lower()
            existing = self._records.get(key)
            if existing is not None:
                duplicates += 1
                if existing != record:
                    logger.debug(f"Conflicting copy of {record.transaction_hash} dropped, first copy kept")
                continue

            self._records[key] = record
            self._index_record(key, record)
            admitted += 1

        if admitted:
            self._last_update = datetime.now(tz=timezone.utc).isoformat()
            self.save()

        logger.info(f"Ingested {admitted} transactions ({duplicates} duplicates skipped)")
        return IngestResult(admitted=admitted, duplicates=duplicates)

    def rebuild_indices(self) -> None:
        """Rebuild every index purely from the primary collection."""
        self._block_index = {}
        self._address_index = {}
        for key, record in self._records.items():
            self._index_record(key, record)

    def verify_indices(self) -> list[str]:
        """
        Check that indices and the primary collection agree.

        Returns:
            Descriptions of every inconsistency found; empty if consistent
        """
        problems: list[str] = []

        for block_number, keys in self._block_index.items():
            for key in keys:
                record = self._records.get(key)
                if record is None:
                    problems.append(f"Block index {block_number} references missing {key}")
                elif record.block_number != block_number:
                    problems.append(f"{key} indexed under block {block_number}, belongs to {record.block_number}")

        for address, keys in self._address_index.items():
            for key in keys:
                record = self._records.get(key)
                if record is None:
                    problems.append(f"Address index {address} references missing {key}")
                elif address not in record.addresses:
                    problems.append(f"{key} indexed under unrelated address {address}")

        for key, record in self._records.items():
            if key not in self._block_index.get(record.block_number, ()):
                problems.append(f"{key} missing from block index {record.block_number}")
            for address in record.addresses:
                if key not in self._address_index.get(address, ()):
                    problems.append(f"{key} missing from address index {address}")

        return problems

    def get_by_hash(self, tx_hash: str) -> TransactionRecord | None:
        return self._records.get(tx_hash.lower())

    def get_by_block(self, block_number: int) -> list[TransactionRecord]:
        return [self._records[k] for k in self._block_index.get(block_number, ())]

    def get_by_address(self, address: str) -> list[TransactionRecord]:
        """Transactions sent or received by an address (case-insensitive)."""
        return [self._records[k] for k in self._address_index.get(address.lower(), ())]

    def search(self, query: SearchFilter | None = None) -> list[TransactionRecord]:
        """
        Return records matching every predicate of the filter.

        Results follow admission order. An empty store yields an empty list.
        """
        query = query or SearchFilter()
        return [record for record in self._records.values() if query.matches(record)]

    def stats(self) -> StoreStats:
        """Summary index computed from the current indices."""
        if not self._records:
            return StoreStats(last_update=self._last_update)

        return StoreStats(
            total_transactions=len(self._records),
            total_blocks=len(self._block_index),
            unique_addresses=len(self._address_index),
            min_block=min(self._block_index),
            max_block=max(self._block_index),
            last_update=self._last_update,
        )

    def export_table(
        self,
        output_file: Path | None = None,
        query: SearchFilter | None = None,
    ) -> Path:
        """
        Export transactions as comma-delimited rows with a fixed column order.

        Args:
            output_file: Destination; defaults to a timestamped file in the store
            query: Optional filter restricting the exported rows

        Returns:
            Path of the written file

        Raises:
            NoDataError: If the store holds no transactions
        """
        if not self._records:
            raise NoDataError("No transactions found in database")

        if output_file is None:
            base = self.path if self.path is not None else Path.cwd()
            output_file = base / f"transactions-export-{int(time.time() * 1000)}.csv"
        output_file = Path(output_file)
        output_file.parent.mkdir(parents=True, exist_ok=True)

        records = self.search(query)
        lines = [",".join(EXPORT_HEADERS)]
        lines.extend(format_row(record) for record in records)
        output_file.write_text("\n".join(lines) + "\n", encoding="utf-8")

        logger.info(f"Exported {len(records)} transactions to: {output_file}")
        return output_file

    def save(self) -> None:
        """Persist the primary collection and the summary index."""
        if self.path is None:
            return

        transactions = [record.to_dict() for record in self._records.values()]
        atomic_write(self.path / TRANSACTIONS_FILE, json.dumps(transactions, indent=2).encode("utf-8"))
        atomic_write(self.path / INDEX_FILE, json.dumps(self.stats().to_dict(), indent=2).encode("utf-8"))

    def load(self) -> None:
        """Reload the primary collection from disk and rebuild the indices."""
        if self.path is None:
            return

        transactions_file = self.path / TRANSACTIONS_FILE
        self._records = {}
        if transactions_file.exists():
            for data in json.loads(transactions_file.read_text("utf-8")):
                record = TransactionRecord.from_dict(data)
                self._records.setdefault(record.transaction_hash.lower(), record)

        index_file = self.path / INDEX_FILE
        if index_file.exists():
            self._last_update = json.loads(index_file.read_text("utf-8")).get("lastUpdate")

        self.rebuild_indices()
        if self._records:
            logger.info(f"Loaded {len(self._records)} transactions from {self.path}")
