#!/usr/bin/env python3
"""Recovery orchestration.

This module rebuilds the document store from backup segments in one of three
modes (full, incremental block range, selective address set), optionally
writes a state reconstruction report, and validates the result. Every run
produces a RecoveryReport and persists its intermediate reports for audit.
"""

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from web3 import Web3

from .document_store import DocumentStore
from .exceptions import SegmentStoreError
from .models import (
    RecoveryMode,
    RecoveryReport,
    RecoveryScope,
    RecoveryState,
    SearchFilter,
    StoreStats,
    TransactionRecord,
)
from .segment_store import SegmentStore, atomic_write, parse_segment_id

# Get logger for this module
logger = logging.getLogger(__name__)


def state_fingerprint(
    network: str,
    chain_id: int,
    stats: StoreStats,
    scope: RecoveryScope,
) -> str:
    """
    Compute a deterministic keccak fingerprint of the store's summary.

    Wall-clock fields are excluded so identical state always yields the same
    fingerprint.

    Returns:
        0x-prefixed keccak256 hex digest
    """
    state = {
        "network": network,
        "chainId": chain_id,
        "totalTransactions": stats.total_transactions,
        "totalBlocks": stats.total_blocks,
        "uniqueAddresses": stats.unique_addresses,
        "minBlock": stats.min_block,
        "maxBlock": stats.max_block,
        "scope": scope.to_dict(),
    }
    canonical = json.dumps(state, sort_keys=True, separators=(",", ":"))
    return Web3.to_hex(Web3.keccak(text=canonical))


class RecoveryOrchestrator:
    """
    Restores transaction history from a SegmentStore into a DocumentStore.

    Segments are read and filtered completely before anything is ingested, so
    a storage failure aborts the run with the document store untouched.
    """

    def __init__(
        self,
        segment_store: SegmentStore,
        document_store: DocumentStore,
        report_dir: Path = Path("recovery"),
        enable_state_reconstruction: bool = True,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            segment_store: Source of backup segments
            document_store: Destination of recovered records
            report_dir: Directory for reconstruction, validation and run reports
            enable_state_reconstruction: Whether to run the reconstruction step
        """
        self.segment_store = segment_store
        self.document_store = document_store
        self.report_dir = Path(report_dir)
        self.enable_state_reconstruction = enable_state_reconstruction
        self.network = segment_store.network
        self.chain_id = segment_store.chain_id

    async def recover(
        self,
        mode: RecoveryMode | str,
        scope: RecoveryScope | None = None,
    ) -> RecoveryReport:
        """Run one recovery.

        Args:
            mode: 'full', 'incremental' or 'selective'
            scope: Block range, address set or segment selection

        Returns:
            RecoveryReport of the run

        Raises:
            ValueError: If the mode is unknown or required scope is missing
            SegmentStoreError: If segments cannot be read (run marked FAILED)
        """
        mode = RecoveryMode(mode)
        scope = scope or RecoveryScope()
        self._validate_scope(mode, scope)

        report = RecoveryReport(mode=mode, scope=scope)
        started = time.monotonic()
        logger.info(f"Starting {mode.value} recovery for network: {self.network}")

        report.state = RecoveryState.RESTORING
        try:
            records = await self._collect_records(mode, scope, report)
        except SegmentStoreError as e:
            report.errors.append(f"Backup restoration failed: {e}")
            report.state = RecoveryState.FAILED
            report.elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.error(f"Recovery failed: {e}")
            self._write_run_report(report)
            raise

        ingest_result = self.document_store.ingest(records)
        report.transactions_recovered = len(records)
        report.transactions_admitted = ingest_result.admitted
        report.blocks_recovered = len({record.block_number for record in records})
        report.addresses_recovered = len({a for record in records for a in record.addresses})
        logger.info(f"Restored {report.transactions_recovered} transactions ({report.transactions_admitted} new)")

        if self.enable_state_reconstruction:
            report.state = RecoveryState.RECONSTRUCTING
            self._reconstruct_state(mode, scope, report)

        report.state = RecoveryState.VALIDATING
        self._validate_recovery(report)

        report.state = RecoveryState.DONE
        report.elapsed_ms = int((time.monotonic() - started) * 1000)
        self._write_run_report(report)
        self._log_summary(report)
        return report

    def _validate_scope(self, mode: RecoveryMode, scope: RecoveryScope) -> None:
        """Reject missing or malformed scope before any store is touched."""
        match mode:
            case RecoveryMode.INCREMENTAL:
                if scope.start_block is None or scope.end_block is None:
                    raise ValueError("Incremental recovery requires startBlock and endBlock")
                if scope.start_block < 0 or scope.end_block < 0:
                    raise ValueError("Incremental recovery block range must be non-negative")
                if scope.start_block > scope.end_block:
                    raise ValueError(
                        f"Invalid block range: startBlock {scope.start_block} "
                        f"is after endBlock {scope.end_block}"
                    )
            case RecoveryMode.SELECTIVE:
                if not scope.target_addresses:
                    raise ValueError("Selective recovery requires targetAddresses")
                for address in scope.target_addresses:
                    if not Web3.is_address(address):
                        raise ValueError(f"Invalid address format: {address}")

        for segment_id in scope.segment_ids:
            parse_segment_id(segment_id)

    async def _collect_records(
        self,
        mode: RecoveryMode,
        scope: RecoveryScope,
        report: RecoveryReport,
    ) -> list[TransactionRecord]:
        """Read segments in creation order and keep the records in scope.

        Records are deduplicated by hash, first occurrence wins.
        """
        targets = {a.lower() for a in scope.target_addresses}
        selected: dict[str, TransactionRecord] = {}

        async with self.segment_store.lock:
            segment_ids = list(scope.segment_ids) or self.segment_store.list_segments()
            if not segment_ids:
                report.warnings.append("No backup segments found")

            for segment_id in segment_ids:
                if mode is RecoveryMode.INCREMENTAL:
                    last_block, _, _ = parse_segment_id(segment_id)
                    # A segment holds no block above its last block.
                    if last_block < scope.start_block:
                        continue

                segment = self.segment_store.read_segment(segment_id)
                logger.debug(f"Processing backup segment: {segment_id} ({len(segment.transactions)} transactions)")

                for record in segment.transactions:
                    if mode is RecoveryMode.INCREMENTAL and not (
                        scope.start_block <= record.block_number <= scope.end_block
                    ):
                        continue
                    if mode is RecoveryMode.SELECTIVE and not record.involves(targets):
                        continue

                    key = record.transaction_hash.lower()
                    if key in selected:
                        report.duplicates_skipped += 1
                        continue
                    selected[key] = record

        if report.duplicates_skipped:
            logger.info(f"Skipped {report.duplicates_skipped} duplicate transactions across segments")
        return list(selected.values())

    def _reconstruct_state(
        self,
        mode: RecoveryMode,
        scope: RecoveryScope,
        report: RecoveryReport,
    ) -> None:
        """Write a state reconstruction report; failures become warnings."""
        logger.info("Reconstructing network state")
        try:
            stats = self.document_store.stats()
            state_report: dict[str, Any] = {
                "network": self.network,
                "chainId": self.chain_id,
                "reconstructionTime": datetime.now(tz=timezone.utc).isoformat(),
                "stateHash": state_fingerprint(self.network, self.chain_id, stats, scope),
            }

            match mode:
                case RecoveryMode.FULL:
                    state_report.update(
                        totalBlocks=stats.total_blocks,
                        totalTransactions=stats.total_transactions,
                        uniqueAddresses=stats.unique_addresses,
                    )
                    filename = "state-reconstruction-report.json"
                case RecoveryMode.INCREMENTAL:
                    in_range = self.document_store.search(
                        SearchFilter(block_range=(scope.start_block, scope.end_block))
                    )
                    state_report.update(
                        blockRange={"from": scope.start_block, "to": scope.end_block},
                        totalTransactions=len(in_range),
                    )
                    filename = f"state-reconstruction-{scope.start_block}-{scope.end_block}.json"
                case RecoveryMode.SELECTIVE:
                    hashes = {
                        record.transaction_hash.lower()
                        for address in scope.target_addresses
                        for record in self.document_store.get_by_address(address)
                    }
                    state_report.update(
                        targetAddresses=sorted(a.lower() for a in scope.target_addresses),
                        totalTransactions=len(hashes),
                    )
                    filename = "state-reconstruction-addresses.json"

            report.artifacts.append(str(self._write_artifact(filename, state_report)))
            logger.info("Network state reconstruction completed")
        except Exception as e:
            logger.warning(f"State reconstruction failed: {e}", exc_info=True)
            report.warnings.append(f"State reconstruction failed: {e}")

    def _validate_recovery(self, report: RecoveryReport) -> None:
        """Re-read store statistics, check index integrity and fingerprint the state."""
        logger.info("Validating recovery")

        if report.transactions_recovered == 0:
            report.warnings.append("No transactions recovered")
        if report.blocks_recovered == 0:
            report.warnings.append("No blocks recovered")

        for problem in self.document_store.verify_indices():
            report.errors.append(f"Index inconsistency: {problem}")

        stats = self.document_store.stats()
        report.fingerprint = state_fingerprint(self.network, self.chain_id, stats, report.scope)

        validation_report = {
            "network": self.network,
            "chainId": self.chain_id,
            "validationTime": datetime.now(tz=timezone.utc).isoformat(),
            "stats": stats.to_dict(),
            "fingerprint": report.fingerprint,
            "isValid": report.is_valid,
            "warnings": list(report.warnings),
            "errors": list(report.errors),
        }
        try:
            report.artifacts.append(str(self._write_artifact("validation-report.json", validation_report)))
        except OSError as e:
            report.errors.append(f"Validation failed: {e}")

    def _write_artifact(self, filename: str, payload: dict[str, Any]) -> Path:
        self.report_dir.mkdir(parents=True, exist_ok=True)
        path = self.report_dir / filename
        atomic_write(path, json.dumps(payload, indent=2).encode("utf-8"))
        return path

    def _write_run_report(self, report: RecoveryReport) -> None:
        run_report = {
            "network": self.network,
            "chainId": self.chain_id,
            "recoveryStats": report.to_dict(),
            "timestamp": datetime.now(tz=timezone.utc).isoformat(),
        }
        try:
            path = self._write_artifact("recovery-report.json", run_report)
        except OSError as e:
            logger.error(f"Could not write recovery report: {e}")
            return
        logger.info(f"Recovery report saved to: {path}")

    def _log_summary(self, report: RecoveryReport) -> None:
        logger.info("Recovery Summary:")
        logger.info(f"  Network: {self.network}")
        logger.info(f"  Chain ID: {self.chain_id}")
        logger.info(f"  Recovery Mode: {report.mode.value}")
        logger.info(f"  Total Blocks Recovered: {report.blocks_recovered}")
        logger.info(f"  Total Transactions Recovered: {report.transactions_recovered}")
        logger.info(f"  Total Transactions Admitted: {report.transactions_admitted}")
        logger.info(f"  Total Addresses Recovered: {report.addresses_recovered}")
        logger.info(f"  Recovery Time: {report.elapsed_ms}ms")
        for warning in report.warnings:
            logger.warning(f"  Warning: {warning}")
        for error in report.errors:
            logger.error(f"  Error: {error}")
