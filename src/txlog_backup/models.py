#!/usr/bin/env python3
"""Data models for the transaction-log backup system.

This module provides the data classes shared by the backup engine, the
segment store, the document store and the recovery orchestrator. Persisted
representations use the camelCase field names of the on-disk segment format.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True, slots=True)
class TransactionRecord:
    """One on-chain transaction as extracted from the node.

    Log entries and the receipt are kept verbatim for audit and are never
    interpreted; everything that is queried has its own typed field.

    Attributes:
        block_number: Height of the containing block
        transaction_hash: Hex transaction hash (unique per network and chain)
        from_address: Sender address
        to_address: Recipient address, empty for contract creation
        value: Transferred value in base units, as a decimal string
        gas_used: Gas used from the receipt, as a decimal string
        gas_price: Gas price, as a decimal string
        timestamp: Containing block timestamp in seconds since epoch
        status: 1 for success, 0 for failure
        logs: Receipt log entries in emission order
        input: Raw call data as a hex string
        receipt: Full receipt payload
    """

    block_number: int
    transaction_hash: str
    from_address: str
    to_address: str
    value: str
    gas_used: str
    gas_price: str
    timestamp: int
    status: int
    logs: tuple[Any, ...] = ()
    input: str = "0x"
    receipt: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        """Validate the typed fields."""
        if self.block_number < 0:
            raise ValueError(f"Block number must be non-negative, got {self.block_number}")
        if not self.transaction_hash:
            raise ValueError("Transaction hash is required")
        if self.status not in (0, 1):
            raise ValueError(f"Status must be 0 or 1, got {self.status}")
        for name in ("value", "gas_used", "gas_price"):
            raw = getattr(self, name)
            if not isinstance(raw, str) or not raw.isdigit():
                raise ValueError(f"{name} must be a non-negative decimal string, got {raw!r}")
        if not isinstance(self.logs, tuple):
            object.__setattr__(self, "logs", tuple(self.logs))

    @property
    def addresses(self) -> tuple[str, ...]:
        """Case-normalized sender and, if present, recipient."""
        if self.to_address:
            return (self.from_address.lower(), self.to_address.lower())
        return (self.from_address.lower(),)

    def involves(self, addresses: set[str]) -> bool:
        """Check whether sender or recipient is in a set of lowercase addresses."""
        return any(address in addresses for address in self.addresses)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted segment representation."""
        return {
            "blockNumber": self.block_number,
            "transactionHash": self.transaction_hash,
            "from": self.from_address,
            "to": self.to_address,
            "value": self.value,
            "gasUsed": self.gas_used,
            "gasPrice": self.gas_price,
            "timestamp": self.timestamp,
            "status": self.status,
            "logs": list(self.logs),
            "input": self.input,
            "receipt": self.receipt,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TransactionRecord":
        """Build a record from its persisted representation."""
        return cls(
            block_number=int(data["blockNumber"]),
            transaction_hash=data["transactionHash"],
            from_address=data.get("from") or "",
            to_address=data.get("to") or "",
            value=str(data.get("value", "0")),
            gas_used=str(data.get("gasUsed", "0")),
            gas_price=str(data.get("gasPrice", "0")),
            timestamp=int(data.get("timestamp", 0)),
            status=int(data.get("status", 0)),
            logs=tuple(data.get("logs") or ()),
            input=data.get("input") or "0x",
            receipt=data.get("receipt") or {},
        )


@dataclass(frozen=True, slots=True)
class BackupSegment:
    """An immutable batch of transaction records written by one flush.

    Attributes:
        network: Network identity the records came from
        chain_id: Chain ID of the network
        last_backup_block: Highest block height covered by this segment
        transactions: Records in block and discovery order
        backup_timestamp: Creation time in milliseconds since epoch
    """

    network: str
    chain_id: int
    last_backup_block: int
    transactions: tuple[TransactionRecord, ...]
    backup_timestamp: int

    def __str__(self) -> str:
        """Human-readable string representation."""
        return (
            f"BackupSegment(network={self.network}, "
            f"last_block={self.last_backup_block}, "
            f"transactions={len(self.transactions)})"
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted segment representation."""
        return {
            "network": self.network,
            "chainId": self.chain_id,
            "lastBackupBlock": self.last_backup_block,
            "transactions": [tx.to_dict() for tx in self.transactions],
            "backupTimestamp": self.backup_timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupSegment":
        """Build a segment from its persisted representation."""
        return cls(
            network=data["network"],
            chain_id=int(data["chainId"]),
            last_backup_block=int(data["lastBackupBlock"]),
            transactions=tuple(TransactionRecord.from_dict(tx) for tx in data.get("transactions", [])),
            backup_timestamp=int(data["backupTimestamp"]),
        )


@dataclass(frozen=True, slots=True)
class BackupCursor:
    """Persisted pointer to the highest fully backed-up block of a network."""

    network: str
    chain_id: int
    last_backup_block: int
    last_backup_time: int
    total_segments: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to the persisted cursor representation."""
        return {
            "network": self.network,
            "chainId": self.chain_id,
            "lastBackupBlock": self.last_backup_block,
            "lastBackupTime": self.last_backup_time,
            "totalSegments": self.total_segments,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BackupCursor":
        """Build a cursor from its persisted representation."""
        return cls(
            network=data["network"],
            chain_id=int(data["chainId"]),
            last_backup_block=int(data["lastBackupBlock"]),
            last_backup_time=int(data["lastBackupTime"]),
            total_segments=int(data.get("totalSegments", 0)),
        )


@dataclass(frozen=True, slots=True)
class BackupResult:
    """Outcome of a single backup run over a block range."""

    from_block: int
    to_block: int
    blocks_processed: int = 0
    blocks_skipped: int = 0
    transactions_recorded: int = 0
    transactions_skipped: int = 0
    segments_written: tuple[str, ...] = ()
    cursor: BackupCursor | None = None

    @property
    def is_noop(self) -> bool:
        """True when the range was empty and nothing was attempted."""
        return self.from_block > self.to_block


@dataclass(frozen=True, slots=True)
class StoreStats:
    """Summary index of the document store.

    The block range is derived from the indexed block numbers, never from
    wall-clock time.
    """

    total_transactions: int = 0
    total_blocks: int = 0
    unique_addresses: int = 0
    min_block: int | None = None
    max_block: int | None = None
    last_update: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "totalTransactions": self.total_transactions,
            "totalBlocks": self.total_blocks,
            "uniqueAddresses": self.unique_addresses,
            "blockRange": {"min": self.min_block, "max": self.max_block},
            "lastUpdate": self.last_update,
        }


@dataclass(frozen=True, slots=True)
class SearchFilter:
    """Predicates for DocumentStore.search; every given predicate must match.

    Attributes:
        from_address: Exact sender, compared case-insensitively
        to_address: Exact recipient, compared case-insensitively
        block_range: Inclusive (from, to) block heights
        value_range: Inclusive (from, to) values in base units
        status: Exact receipt status
    """

    from_address: str | None = None
    to_address: str | None = None
    block_range: tuple[int, int] | None = None
    value_range: tuple[int, int] | None = None
    status: int | None = None

    def __post_init__(self) -> None:
        """Normalize and validate the range predicates."""
        if self.block_range is not None:
            low, high = (int(v) for v in self.block_range)
            object.__setattr__(self, "block_range", (low, high))
        if self.value_range is not None:
            # Values may exceed 64 bits; int() keeps full precision.
            low, high = (int(v) for v in self.value_range)
            object.__setattr__(self, "value_range", (low, high))
        if self.status is not None and self.status not in (0, 1):
            raise ValueError(f"Status filter must be 0 or 1, got {self.status}")

    def matches(self, record: TransactionRecord) -> bool:
        """Check a record against every provided predicate."""
        if self.from_address and record.from_address.lower() != self.from_address.lower():
            return False
        if self.to_address and record.to_address.lower() != self.to_address.lower():
            return False
        if self.block_range is not None:
            low, high = self.block_range
            if not low <= record.block_number <= high:
                return False
        if self.value_range is not None:
            low, high = self.value_range
            if not low <= int(record.value) <= high:
                return False
        if self.status is not None and record.status != self.status:
            return False
        return True


class RecoveryMode(Enum):
    """Scope of a recovery run."""
    FULL = "full"
    INCREMENTAL = "incremental"
    SELECTIVE = "selective"


class RecoveryState(Enum):
    """Lifecycle of a single recovery run."""
    IDLE = "idle"
    RESTORING = "restoring"
    RECONSTRUCTING = "reconstructing"
    VALIDATING = "validating"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class RecoveryScope:
    """Scope descriptors for a recovery run.

    Attributes:
        start_block: First block to restore (incremental mode)
        end_block: Last block to restore (incremental mode)
        target_addresses: Addresses to restore (selective mode)
        segment_ids: Restrict the run to these segments (full mode)
    """

    start_block: int | None = None
    end_block: int | None = None
    target_addresses: tuple[str, ...] = ()
    segment_ids: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-safe descriptor."""
        descriptor: dict[str, Any] = {}
        if self.start_block is not None or self.end_block is not None:
            descriptor["blockRange"] = {"from": self.start_block, "to": self.end_block}
        if self.target_addresses:
            descriptor["targetAddresses"] = sorted(a.lower() for a in self.target_addresses)
        if self.segment_ids:
            descriptor["segmentIds"] = list(self.segment_ids)
        return descriptor


@dataclass
class RecoveryReport:
    """Outcome of one recovery run; warnings never affect validity."""

    mode: RecoveryMode
    scope: RecoveryScope
    state: RecoveryState = RecoveryState.IDLE
    transactions_recovered: int = 0
    transactions_admitted: int = 0
    duplicates_skipped: int = 0
    blocks_recovered: int = 0
    addresses_recovered: int = 0
    elapsed_ms: int = 0
    fingerprint: str | None = None
    warnings: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    artifacts: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        """A run is valid iff no error was recorded."""
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "recoveryMode": self.mode.value,
            "scope": self.scope.to_dict(),
            "state": self.state.value,
            "totalTransactionsRecovered": self.transactions_recovered,
            "totalTransactionsAdmitted": self.transactions_admitted,
            "duplicatesSkipped": self.duplicates_skipped,
            "totalBlocksRecovered": self.blocks_recovered,
            "totalAddressesRecovered": self.addresses_recovered,
            "recoveryTime": self.elapsed_ms,
            "fingerprint": self.fingerprint,
            "isValid": self.is_valid,
            "warnings": list(self.warnings),
            "errors": list(self.errors),
            "artifacts": list(self.artifacts),
        }
