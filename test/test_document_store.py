#!/usr/bin/env python3
"""Tests for the document store."""

import json
from pathlib import Path

import pytest

from conftest import ALICE, BOB, CAROL, make_record, tx_hash
from txlog_backup.config import DatabaseConfig
from txlog_backup.document_store import EXPORT_HEADERS, DocumentStore, format_row, iso_timestamp
from txlog_backup.exceptions import NoDataError
from txlog_backup.models import SearchFilter


@pytest.fixture
def store():
    """Create an in-memory document store."""
    return DocumentStore()


class TestIngest:
    """Tests for ingestion and deduplication."""

    def test_ingest_counts(self, store):
        """Test admitted and duplicate counts."""
        result = store.ingest([make_record(1, 1), make_record(1, 2), make_record(1, 1)])

        assert result.admitted == 2
        assert result.duplicates == 1
        assert len(store) == 2

    def test_ingest_is_idempotent(self, store):
        """Test that re-ingesting the same records changes nothing."""
        records = [make_record(1, 1), make_record(2, 2, to_address=CAROL)]
        store.ingest(records)
        snapshot = (dict(store._records), {k: list(v) for k, v in store._block_index.items()},
                    {k: list(v) for k, v in store._address_index.items()})

        result = store.ingest(records)

        assert result.admitted == 0
        assert result.duplicates == 2
        assert (store._records, store._block_index, store._address_index) == snapshot

    def test_first_write_wins(self, store):
        """Test that a conflicting copy of a known hash is dropped."""
        original = make_record(1, 1, value=10)
        store.ingest([original])
        store.ingest([make_record(1, 1, value=99)])

        assert store.get_by_hash(tx_hash(1)) == original

    def test_hash_lookup_is_case_insensitive(self, store):
        """Test lookups by hash regardless of case."""
        record = make_record(1, 0xABC)
        store.ingest([record])

        assert store.get_by_hash(record.transaction_hash.upper().replace("0X", "0x")) == record


class TestIndices:
    """Tests for the derived indices."""

    def test_block_and_address_lookups(self, store):
        """Test retrieval by block and address."""
        a = make_record(1, 1, from_address=ALICE, to_address=BOB)
        b = make_record(1, 2, from_address=BOB, to_address=CAROL)
        c = make_record(2, 3, from_address=CAROL, to_address="")
        store.ingest([a, b, c])

        assert store.get_by_block(1) == [a, b]
        assert store.get_by_block(3) == []
        assert store.get_by_address(BOB) == [a, b]
        assert store.get_by_address(CAROL.upper().replace("0X", "0x")) == [b, c]

    def test_indices_consistent(self, store):
        """Test that every record is indexed exactly where it belongs."""
        store.ingest([make_record(b, b, to_address="" if b % 3 == 0 else BOB) for b in range(10)])

        assert store.verify_indices() == []
        for key, record in store._records.items():
            assert sum(key in keys for keys in store._block_index.values()) == 1
            assert key in store._block_index[record.block_number]
            for address in record.addresses:
                assert key in store._address_index[address]

    def test_self_transfer_indexed_once(self, store):
        """Test that a sender paying itself appears once under its address."""
        store.ingest([make_record(1, 1, from_address=ALICE, to_address=ALICE)])

        assert len(store.get_by_address(ALICE)) == 1

    def test_rebuild_matches_incremental(self, store):
        """Test that rebuilt indices equal incrementally maintained ones."""
        store.ingest([make_record(1, 1), make_record(2, 2, to_address=CAROL)])
        store.ingest([make_record(1, 3, from_address=CAROL)])
        before = (dict(store._block_index), dict(store._address_index))

        store.rebuild_indices()

        assert (store._block_index, store._address_index) == before

    def test_verify_detects_stale_entry(self, store):
        """Test that a hand-patched index is reported."""
        store.ingest([make_record(1, 1)])
        store._block_index[5] = ["0xmissing"]

        problems = store.verify_indices()

        assert any("references missing" in problem for problem in problems)
        store.rebuild_indices()
        assert store.verify_indices() == []


class TestSearch:
    """Tests for search and statistics."""

    def test_block_range_and_status(self, store):
        """Test a combined block range and status filter."""
        records = [make_record(b, b, status=b % 2) for b in range(40, 71)]
        store.ingest(records)

        results = store.search(SearchFilter(block_range=(50, 60), status=1))

        assert results
        assert all(50 <= r.block_number <= 60 and r.status == 1 for r in results)
        assert len(results) == len([r for r in records if 50 <= r.block_number <= 60 and r.status == 1])

    def test_address_filters(self, store):
        """Test exact sender and recipient filters."""
        store.ingest([
            make_record(1, 1, from_address=ALICE, to_address=BOB),
            make_record(1, 2, from_address=BOB, to_address=ALICE),
        ])

        assert [r.transaction_hash for r in store.search(SearchFilter(from_address=ALICE.upper().replace("0X", "0x")))] == [tx_hash(1)]
        assert [r.transaction_hash for r in store.search(SearchFilter(to_address=ALICE))] == [tx_hash(2)]

    def test_value_range_beyond_64_bits(self, store):
        """Test numeric value comparison on very large values."""
        big = 10**30
        store.ingest([make_record(1, 1, value=big), make_record(1, 2, value=5)])

        results = store.search(SearchFilter(value_range=(10**29, 10**31)))

        assert [r.value for r in results] == [str(big)]

    def test_no_filter_returns_everything(self, store):
        """Test that an empty filter matches all records."""
        store.ingest([make_record(1, 1), make_record(2, 2)])
        assert len(store.search()) == 2

    def test_search_empty_store(self, store):
        """Test that searching an empty store returns nothing."""
        assert store.search(SearchFilter(status=1)) == []

    def test_invalid_status_filter(self):
        """Test that status filters are validated."""
        with pytest.raises(ValueError, match="Status filter must be 0 or 1"):
            SearchFilter(status=2)

    def test_stats(self, store):
        """Test the summary index."""
        store.ingest([
            make_record(10, 1, from_address=ALICE, to_address=BOB),
            make_record(10, 2, from_address=BOB, to_address=""),
            make_record(30, 3, from_address=CAROL, to_address=ALICE),
        ])

        stats = store.stats()

        assert stats.total_transactions == 3
        assert stats.total_blocks == 2
        assert stats.unique_addresses == 3
        assert (stats.min_block, stats.max_block) == (10, 30)
        assert stats.last_update is not None

    def test_stats_empty(self, store):
        """Test the summary of an empty store."""
        stats = store.stats()

        assert stats.total_transactions == 0
        assert stats.min_block is None


class TestExport:
    """Tests for tabular export."""

    def test_iso_timestamp(self):
        """Test timestamp formatting."""
        assert iso_timestamp(0) == "1970-01-01T00:00:00.000Z"

    def test_format_row_quotes_input(self):
        """Test that only the input column is quoted, with doubled quotes."""
        record = make_record(7, 1, input='0xab"cd')

        assert format_row(record).endswith(',1,"0xab""cd"')

    def test_export_table(self, store, tmp_path):
        """Test the exported header and rows."""
        store.ingest([make_record(1, 1, to_address=""), make_record(2, 2)])
        output = tmp_path / "out" / "export.csv"

        path = store.export_table(output)

        lines = path.read_text().splitlines()
        assert path == output
        assert lines[0] == ",".join(EXPORT_HEADERS)
        assert lines[0] == "Block Number,Transaction Hash,From,To,Value (Wei),Gas Used,Gas Price,Timestamp,Status,Input Data"
        assert len(lines) == 3
        assert lines[1].split(",")[:4] == ["1", tx_hash(1), ALICE, ""]

    def test_export_with_query(self, store, tmp_path):
        """Test exporting a filtered subset."""
        store.ingest([make_record(1, 1, status=0), make_record(2, 2, status=1)])

        path = store.export_table(tmp_path / "ok.csv", SearchFilter(status=1))

        assert len(path.read_text().splitlines()) == 2

    def test_export_empty_store(self, store, tmp_path):
        """Test that exporting nothing is an error."""
        with pytest.raises(NoDataError, match="No transactions found"):
            store.export_table(tmp_path / "empty.csv")

    def test_default_export_path(self, tmp_path):
        """Test the default export location inside the database directory."""
        store = DocumentStore(tmp_path / "db")
        store.ingest([make_record(1, 1)])

        path = store.export_table()

        assert path.parent == tmp_path / "db"
        assert path.name.startswith("transactions-export-")
        assert path.suffix == ".csv"


class TestPersistence:
    """Tests for on-disk persistence."""

    def test_reload_rebuilds_indices(self, tmp_path):
        """Test that a reopened store has the same contents and indices."""
        records = [make_record(1, 1), make_record(2, 2, to_address=CAROL)]
        first = DocumentStore(tmp_path)
        first.ingest(records)

        second = DocumentStore(tmp_path)

        assert len(second) == 2
        assert second.get_by_address(CAROL) == [records[1]]
        assert second.stats().total_transactions == 2
        assert second.stats().last_update == first.stats().last_update
        assert second.verify_indices() == []

    def test_persisted_files(self, tmp_path):
        """Test the persisted primary collection and summary index."""
        DocumentStore(tmp_path).ingest([make_record(3, 1)])

        transactions = json.loads((tmp_path / "transactions.json").read_text())
        summary = json.loads((tmp_path / "index.json").read_text())

        assert transactions[0]["transactionHash"] == tx_hash(1)
        assert summary["totalTransactions"] == 1
        assert summary["blockRange"] == {"min": 3, "max": 3}

    def test_from_config(self, tmp_path):
        """Test creating a store from configuration."""
        config = DatabaseConfig(database_dir=tmp_path, database_name="localhost_transactions")

        store = DocumentStore.from_config(config)

        assert store.path == Path(tmp_path) / "localhost_transactions"
        assert store.path.is_dir()
