"""
Incremental backup engine.

Walks a block range on the chain node, extracts one TransactionRecord per
transaction and seals them into segments, advancing the persisted cursor once
the range is done.
"""

import logging
import time
from typing import Any

from .chain_reader import ChainReader
from .exceptions import ChainReaderError
from .models import BackupCursor, BackupResult, TransactionRecord
from .segment_store import SegmentStore

logger = logging.getLogger(__name__)

# Per-transaction extraction failures that are logged and skipped.
EXTRACTION_ERRORS = (ChainReaderError, KeyError, TypeError, ValueError)


def to_int(value: Any) -> int:
    """Parse an RPC quantity given as int, decimal string or 0x-hex string."""
    if value is None:
        return 0
    if isinstance(value, str):
        return int(value, 16) if value.startswith("0x") else int(value)
    return int(value)


class BackupEngine:
    """
    Backs up transaction history from a chain node into a SegmentStore.

    Fetches are sequential to keep per-block ordering and bound the load on
    the node. A transaction or block that fails to fetch is logged and skipped
    for this run; it is not retried automatically on later runs because the
    cursor still advances past it.
    """

    DEFAULT_BATCH_SIZE = 100

    def __init__(
        self,
        reader: ChainReader,
        store: SegmentStore,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ):
        """
        Initialize the backup engine.

        Args:
            reader: Source of blocks, transactions and receipts
            store: Destination of segments and the cursor
            batch_size: Number of processed blocks per segment flush
        """
        if batch_size <= 0:
            raise ValueError(f"Batch size must be positive, got {batch_size}")

        self.reader = reader
        self.store = store
        self.batch_size = batch_size

    async def run_backup(
        self,
        from_block: int | None = None,
        to_block: int | None = None,
    ) -> BackupResult:
        """
        Back up every transaction in [from_block, to_block].

        Args:
            from_block: First height; defaults to the block after the cursor
            to_block: Last height; defaults to, and is capped at, the current chain height

        Returns:
            BackupResult describing the run

        Raises:
            ChainReaderError: If the node is unreachable at range start
            SegmentStoreError: If a segment or the cursor cannot be written
        """
        if from_block is not None and from_block < 0:
            raise ValueError(f"from_block must be non-negative, got {from_block}")
        if to_block is not None and to_block < 0:
            raise ValueError(f"to_block must be non-negative, got {to_block}")

        cursor = self.store.read_cursor()
        current_height = await self.reader.current_height()

        if from_block is None:
            from_block = cursor.last_backup_block + 1 if cursor else 0
        if to_block is None:
            to_block = current_height
        elif to_block > current_height:
            # Blocks above the head do not exist yet; the cursor must not pass them.
            logger.warning(f"Block {to_block} is above chain head {current_height}, clamping range")
            to_block = current_height

        if from_block > to_block:
            logger.info(f"Nothing to back up: from block {from_block} is after to block {to_block}")
            return BackupResult(from_block=from_block, to_block=to_block, cursor=cursor)

        logger.info(
            f"Backing up {self.store.network} transactions "
            f"from block {from_block} to {to_block}"
        )

        pending: list[TransactionRecord] = []
        segments: list[str] = []
        processed = skipped_blocks = recorded = skipped_txs = 0

        for height in range(from_block, to_block + 1):
            try:
                block = await self.reader.get_block_with_tx_hashes(height)
            except ChainReaderError as e:
                logger.error(f"Error processing block {height}: {e}")
                skipped_blocks += 1
                continue

            if not block:
                logger.warning(f"Block {height} not found, skipping")
                skipped_blocks += 1
                continue

            tx_hashes = block.get("txHashes") or []
            if tx_hashes:
                logger.debug(f"Processing block {height} ({len(tx_hashes)} transactions)")

            for tx_hash in tx_hashes:
                record = await self._extract_record(block, tx_hash)
                if record is None:
                    skipped_txs += 1
                    continue
                pending.append(record)
                recorded += 1

            processed += 1
            if processed % self.batch_size == 0 and pending:
                segments.append(self.store.write_segment(pending, height))
                pending = []

        if pending:
            segments.append(self.store.write_segment(pending, to_block))

        previous = cursor.last_backup_block if cursor else -1
        new_cursor = BackupCursor(
            network=self.store.network,
            chain_id=self.store.chain_id,
            last_backup_block=max(previous, to_block),
            last_backup_time=int(time.time() * 1000),
            total_segments=len(self.store.list_segments()),
        )
        self.store.write_cursor(new_cursor)

        logger.info(
            f"Backup completed: {processed} blocks processed, {skipped_blocks} skipped, "
            f"{recorded} transactions in {len(segments)} segments"
        )
        if skipped_txs:
            logger.warning(f"{skipped_txs} transactions could not be fetched and were skipped")

        return BackupResult(
            from_block=from_block,
            to_block=to_block,
            blocks_processed=processed,
            blocks_skipped=skipped_blocks,
            transactions_recorded=recorded,
            transactions_skipped=skipped_txs,
            segments_written=tuple(segments),
            cursor=new_cursor,
        )

    async def _extract_record(self, block: dict[str, Any], tx_hash: str) -> TransactionRecord | None:
        """
        Fetch a transaction and its receipt and assemble a record.

        Args:
            block: Block summary with number and timestamp
            tx_hash: Hash of the transaction to fetch

        Returns:
            The record, or None if the transaction could not be fetched
        """
        try:
            tx = await self.reader.get_transaction(tx_hash)
            receipt = await self.reader.get_transaction_receipt(tx_hash)
            if not tx or not receipt:
                logger.warning(f"Transaction {tx_hash} or its receipt is missing, skipping")
                return None

            return TransactionRecord(
                block_number=to_int(block["number"]),
                transaction_hash=tx.get("hash") or tx_hash,
                from_address=tx.get("from") or "",
                to_address=tx.get("to") or "",
                value=str(to_int(tx.get("value"))),
                gas_used=str(to_int(receipt.get("gasUsed"))),
                gas_price=str(to_int(tx.get("gasPrice"))),
                timestamp=to_int(block.get("timestamp")),
                status=to_int(receipt.get("status")),
                logs=tuple(receipt.get("logs") or ()),
                input=tx.get("data") or "0x",
                receipt=receipt,
            )
        except EXTRACTION_ERRORS as e:
            logger.warning(f"Error processing transaction {tx_hash}: {e}")
            return None

    def get_backup_info(self) -> BackupCursor | None:
        """Return the persisted cursor, if any backup has completed."""
        return self.store.read_cursor()
