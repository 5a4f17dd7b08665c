"""
Segment consolidation.

Merges backup segments into one ordered archive with freshly built block and
address indices and a summary, written under ``<restore_dir>/<network>/``.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from .exceptions import NoDataError
from .models import TransactionRecord
from .segment_store import SegmentStore, atomic_write

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ConsolidationResult:
    """Paths of the written consolidation artifacts and the summary."""
    transactions_file: Path
    block_index_file: Path
    address_index_file: Path
    summary_file: Path
    summary: dict[str, Any] = field(default_factory=dict)


def sort_records(records: list[TransactionRecord]) -> list[TransactionRecord]:
    """Order records by block height, then transaction hash."""
    return sorted(records, key=lambda r: (r.block_number, r.transaction_hash))


def build_block_index(records: list[TransactionRecord]) -> dict[str, list[str]]:
    index: dict[str, list[str]] = {}
    for record in records:
        index.setdefault(str(record.block_number), []).append(record.transaction_hash)
    return index


def build_address_index(records: list[TransactionRecord]) -> dict[str, list[str]]:
    index: dict[str, list[str]] = {}
    for record in records:
        for address in dict.fromkeys(record.addresses):
            index.setdefault(address, []).append(record.transaction_hash)
    return index


class ConsolidationTool:
    """
    Builds a single reproducible archive out of selected segments.

    Duplicates across overlapping segments are kept; ingestion into a
    DocumentStore is where records are deduplicated.
    """

    def __init__(self, segment_store: SegmentStore, restore_dir: Path = Path("restored")):
        """
        Initialize the consolidation tool.

        Args:
            segment_store: Source of backup segments
            restore_dir: Root directory for consolidated output
        """
        self.segment_store = segment_store
        self.output_dir = Path(restore_dir) / segment_store.network

    async def consolidate(self, segment_ids: list[str] | None = None) -> ConsolidationResult:
        """
        Merge segments into an ordered archive.

        Args:
            segment_ids: Segments to merge; None merges every segment

        Returns:
            ConsolidationResult with the written paths and summary

        Raises:
            NoDataError: If there are no segments to merge
            SegmentNotFoundError: If a requested segment does not exist
            SegmentStoreError: If a segment cannot be read
        """
        records: list[TransactionRecord] = []

        async with self.segment_store.lock:
            selected = list(segment_ids) if segment_ids is not None else self.segment_store.list_segments()
            if not selected:
                raise NoDataError(f"No backup segments found for network {self.segment_store.network}")

            logger.info(f"Consolidating {len(selected)} backup segments")
            for segment_id in selected:
                segment = self.segment_store.read_segment(segment_id)
                logger.debug(f"Processing backup segment: {segment_id} ({len(segment.transactions)} transactions)")
                records.extend(segment.transactions)

        records = sort_records(records)
        block_index = build_block_index(records)
        address_index = build_address_index(records)
        summary = self._summarize(records, address_index)

        self.output_dir.mkdir(parents=True, exist_ok=True)
        stamp = int(time.time() * 1000)
        result = ConsolidationResult(
            transactions_file=self._write(f"all-transactions-{stamp}.json", [r.to_dict() for r in records]),
            block_index_file=self._write(f"block-index-{stamp}.json", block_index),
            address_index_file=self._write(f"address-index-{stamp}.json", address_index),
            summary_file=self._write(f"restore-summary-{stamp}.json", summary),
            summary=summary,
        )

        logger.info(f"Saved consolidated data to: {self.output_dir}")
        logger.info(
            f"Summary: {summary['totalTransactions']} transactions, "
            f"{summary['uniqueAddresses']} unique addresses"
        )
        return result

    def _summarize(
        self,
        records: list[TransactionRecord],
        address_index: dict[str, list[str]],
    ) -> dict[str, Any]:
        if records:
            block_range = {"from": records[0].block_number, "to": records[-1].block_number}
            timestamps = [r.timestamp for r in records]
            time_range = {"from": min(timestamps), "to": max(timestamps)}
        else:
            block_range = {"from": None, "to": None}
            time_range = {"from": None, "to": None}

        return {
            "network": self.segment_store.network,
            "chainId": self.segment_store.chain_id,
            "totalTransactions": len(records),
            "blockRange": block_range,
            "timeRange": time_range,
            "uniqueAddresses": len(address_index),
            "restoreTimestamp": int(time.time() * 1000),
        }

    def _write(self, filename: str, payload: Any) -> Path:
        path = self.output_dir / filename
        atomic_write(path, json.dumps(payload, indent=2).encode("utf-8"))
        return path
