#!/usr/bin/env python3
"""Shared fixtures: an in-memory chain node and record builders."""

from typing import Any

import pytest

from txlog_backup.exceptions import ChainReaderError
from txlog_backup.models import TransactionRecord
from txlog_backup.segment_store import SegmentStore

ALICE = "0x" + "aa" * 20
BOB = "0x" + "bb" * 20
CAROL = "0x" + "cc" * 20


def tx_hash(n: int) -> str:
    """Deterministic 32-byte transaction hash for an integer."""
    return "0x" + f"{n:064x}"


def make_record(
    block_number: int,
    n: int,
    from_address: str = ALICE,
    to_address: str = BOB,
    value: int = 1000,
    status: int = 1,
    **overrides: Any,
) -> TransactionRecord:
    """Build a valid TransactionRecord with sensible defaults."""
    fields = dict(
        block_number=block_number,
        transaction_hash=tx_hash(n),
        from_address=from_address,
        to_address=to_address,
        value=str(value),
        gas_used="21000",
        gas_price="1000000000",
        timestamp=1_700_000_000 + block_number,
        status=status,
        logs=(),
        input="0x",
        receipt={"status": status, "gasUsed": 21000},
    )
    fields.update(overrides)
    return TransactionRecord(**fields)


class FakeChainReader:
    """
    In-memory ChainReader.

    Blocks map a height to the transactions it contains. Every call is
    counted so tests can assert which fetches happened.
    """

    def __init__(self, height: int = 0):
        self.height = height
        self.blocks: dict[int, list[dict[str, Any]]] = {}
        self.failing_blocks: set[int] = set()
        self.missing_blocks: set[int] = set()
        self.failing_transactions: set[str] = set()
        self.height_error: Exception | None = None
        self.block_fetches: list[int] = []
        self.transaction_fetches: list[str] = []

    def add_transaction(
        self,
        block_number: int,
        n: int,
        from_address: str = ALICE,
        to_address: str = BOB,
        value: int = 1000,
        status: int = 1,
    ) -> str:
        """Place a transaction in a block and return its hash."""
        entry = {
            "hash": tx_hash(n),
            "from": from_address,
            "to": to_address,
            "value": value,
            "gasPrice": 1_000_000_000,
            "data": "0xdeadbeef",
            "receipt": {
                "transactionHash": tx_hash(n),
                "gasUsed": "0x5208",
                "status": "0x1" if status else "0x0",
                "logs": [{"logIndex": 0, "data": "0x01"}],
            },
        }
        self.blocks.setdefault(block_number, []).append(entry)
        self.height = max(self.height, block_number)
        return entry["hash"]

    def _find(self, hash_: str) -> dict[str, Any] | None:
        for entries in self.blocks.values():
            for entry in entries:
                if entry["hash"] == hash_:
                    return entry
        return None

    async def current_height(self) -> int:
        if self.height_error is not None:
            raise self.height_error
        return self.height

    async def get_block_with_tx_hashes(self, height: int) -> dict[str, Any] | None:
        self.block_fetches.append(height)
        if height in self.failing_blocks:
            raise ChainReaderError(f"Error fetching block {height}")
        if height > self.height or height in self.missing_blocks:
            return None
        return {
            "number": height,
            "timestamp": 1_700_000_000 + height,
            "txHashes": [entry["hash"] for entry in self.blocks.get(height, [])],
        }

    async def get_transaction(self, hash_: str) -> dict[str, Any] | None:
        self.transaction_fetches.append(hash_)
        if hash_ in self.failing_transactions:
            raise ChainReaderError(f"Error fetching transaction {hash_}")
        entry = self._find(hash_)
        if entry is None:
            return None
        return {key: value for key, value in entry.items() if key != "receipt"}

    async def get_transaction_receipt(self, hash_: str) -> dict[str, Any] | None:
        entry = self._find(hash_)
        return dict(entry["receipt"]) if entry else None


@pytest.fixture
def chain():
    """Create an empty in-memory chain."""
    return FakeChainReader()


@pytest.fixture
def segment_store(tmp_path):
    """Create a JSON segment store in a temporary directory."""
    return SegmentStore(tmp_path / "backups", network="localhost", chain_id=1337)
