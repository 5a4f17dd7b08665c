#!/usr/bin/env python3
"""Tests for segment consolidation."""

import json

import pytest

from conftest import ALICE, BOB, CAROL, make_record, tx_hash
from txlog_backup.consolidation import ConsolidationTool, sort_records
from txlog_backup.exceptions import NoDataError, SegmentNotFoundError


@pytest.fixture
def tool(segment_store, tmp_path):
    """Create a consolidation tool writing under a temporary directory."""
    return ConsolidationTool(segment_store, restore_dir=tmp_path / "restored")


class TestConsolidation:
    """Test suite for ConsolidationTool."""

    @pytest.mark.asyncio
    async def test_writes_all_artifacts(self, tool, segment_store, tmp_path):
        """Test the four output files and their location."""
        segment_store.write_segment([make_record(1, 1)], up_to_block=1)

        result = await tool.consolidate()

        output_dir = tmp_path / "restored" / "localhost"
        for path in (result.transactions_file, result.block_index_file,
                     result.address_index_file, result.summary_file):
            assert path.parent == output_dir
            assert path.exists()
        assert result.transactions_file.name.startswith("all-transactions-")
        assert result.summary_file.name.startswith("restore-summary-")

    @pytest.mark.asyncio
    async def test_sorted_by_block_then_hash(self, tool, segment_store):
        """Test deterministic ordering regardless of segment contents order."""
        segment_store.write_segment([make_record(5, 9), make_record(2, 7)], up_to_block=5, timestamp_ms=1)
        segment_store.write_segment([make_record(5, 3), make_record(1, 8)], up_to_block=5, timestamp_ms=2)

        result = await tool.consolidate()

        data = json.loads(result.transactions_file.read_text())
        assert [(tx["blockNumber"], tx["transactionHash"]) for tx in data] == [
            (1, tx_hash(8)), (2, tx_hash(7)), (5, tx_hash(3)), (5, tx_hash(9)),
        ]

    @pytest.mark.asyncio
    async def test_order_independent_of_segment_selection_order(self, tool, segment_store):
        """Test that reading segments in a different order gives the same archive."""
        first = segment_store.write_segment([make_record(3, 1), make_record(1, 2)], up_to_block=3, timestamp_ms=1)
        second = segment_store.write_segment([make_record(2, 3), make_record(3, 0)], up_to_block=3, timestamp_ms=2)

        forward = await tool.consolidate([first, second])
        forward_data = json.loads(forward.transactions_file.read_text())
        backward = await tool.consolidate([second, first])

        assert forward_data == json.loads(backward.transactions_file.read_text())
        assert [tx["transactionHash"] for tx in forward_data] == [tx_hash(2), tx_hash(3), tx_hash(0), tx_hash(1)]

    @pytest.mark.asyncio
    async def test_duplicates_are_kept(self, tool, segment_store):
        """Test that overlapping segments are not deduplicated here."""
        segment_store.write_segment([make_record(1, 1)], up_to_block=1, timestamp_ms=1)
        segment_store.write_segment([make_record(1, 1)], up_to_block=1, timestamp_ms=2)

        result = await tool.consolidate()

        assert result.summary["totalTransactions"] == 2

    @pytest.mark.asyncio
    async def test_indices_and_summary(self, tool, segment_store):
        """Test the rebuilt indices and the summary fields."""
        segment_store.write_segment([
            make_record(10, 1, from_address=ALICE, to_address=BOB),
            make_record(10, 2, from_address=BOB.upper().replace("0X", "0x"), to_address=""),
            make_record(20, 3, from_address=CAROL, to_address=ALICE),
        ], up_to_block=20)

        result = await tool.consolidate()

        block_index = json.loads(result.block_index_file.read_text())
        address_index = json.loads(result.address_index_file.read_text())
        assert block_index == {"10": [tx_hash(1), tx_hash(2)], "20": [tx_hash(3)]}
        assert address_index[BOB] == [tx_hash(1), tx_hash(2)]
        assert address_index[ALICE] == [tx_hash(1), tx_hash(3)]

        summary = result.summary
        assert summary["totalTransactions"] == 3
        assert summary["blockRange"] == {"from": 10, "to": 20}
        assert summary["timeRange"] == {"from": 1_700_000_010, "to": 1_700_000_020}
        assert summary["uniqueAddresses"] == 3
        assert summary["chainId"] == 1337
        assert json.loads(result.summary_file.read_text()) == summary

    @pytest.mark.asyncio
    async def test_single_segment(self, tool, segment_store):
        """Test consolidating one chosen segment."""
        segment_store.write_segment([make_record(1, 1)], up_to_block=1, timestamp_ms=1)
        chosen = segment_store.write_segment([make_record(2, 2), make_record(2, 3)], up_to_block=2, timestamp_ms=2)

        result = await tool.consolidate([chosen])

        assert result.summary["totalTransactions"] == 2

    @pytest.mark.asyncio
    async def test_no_segments(self, tool):
        """Test that consolidating nothing is an error."""
        with pytest.raises(NoDataError, match="No backup segments found"):
            await tool.consolidate()

    @pytest.mark.asyncio
    async def test_unknown_segment(self, tool):
        """Test that an unknown segment id is reported."""
        with pytest.raises(SegmentNotFoundError):
            await tool.consolidate(["backup-000000000001-1.json"])

    def test_sort_records(self):
        """Test the sort key directly."""
        records = [make_record(2, 1), make_record(1, 3), make_record(1, 2)]
        assert [r.transaction_hash for r in sort_records(records)] == [tx_hash(2), tx_hash(3), tx_hash(1)]
