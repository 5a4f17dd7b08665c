"""
Chain reader capability and its web3 implementation.

The backup engine only depends on the ChainReader protocol; Web3ChainReader
provides it on top of an async JSON-RPC connection.
"""

import asyncio
import json
import logging
from typing import Any, Protocol

from web3 import AsyncWeb3, Web3

from .config import ChainConfig
from .exceptions import ChainReaderError

logger = logging.getLogger(__name__)


class ChainReader(Protocol):
    """Read-only access to blocks, transactions and receipts of a node."""

    async def current_height(self) -> int: ...

    async def get_block_with_tx_hashes(self, height: int) -> dict[str, Any] | None:
        """Return {number, timestamp, txHashes[]} or None if the block is unknown."""
        ...

    async def get_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        """Return {hash, from, to, value, gasPrice, data} or None if unknown."""
        ...

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        """Return the full receipt ({gasUsed, status, logs[], ...}) or None."""
        ...


def to_plain(data: Any) -> Any:
    """
    Convert web3 response objects into JSON-safe builtins.

    AttributeDict and HexBytes values become dicts and 0x-prefixed strings.

    Args:
        data: Response object returned by web3

    Returns:
        Equivalent structure made of dict, list, str, int and None
    """
    if data is None:
        return None
    return json.loads(Web3.to_json(data))


class Web3ChainReader:
    """
    ChainReader backed by AsyncWeb3 over HTTP.

    Every call is bounded by the request timeout. Failures are wrapped in
    ChainReaderError and never retried here; the scheduler retries on its
    next cycle.
    """

    def __init__(self, rpc_url: str, request_timeout: int = 30):
        """
        Initialize the chain reader.

        Args:
            rpc_url: HTTP RPC endpoint URL
            request_timeout: Per-call timeout in seconds
        """
        self.rpc_url = rpc_url
        self.request_timeout = request_timeout
        self.w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))

    @classmethod
    def from_config(cls, config: ChainConfig) -> "Web3ChainReader":
        """Create a reader for the configured node."""
        return cls(rpc_url=config.rpc_url, request_timeout=config.request_timeout)

    async def _call(self, description: str, awaitable: Any) -> Any:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.request_timeout)
        except asyncio.TimeoutError as e:
            raise ChainReaderError(
                f"Timed out after {self.request_timeout}s while fetching {description}"
            ) from e
        except ChainReaderError:
            raise
        except Exception as e:
            raise ChainReaderError(f"Error fetching {description}: {e}") from e

    async def current_height(self) -> int:
        return int(await self._call("block number", self.w3.eth.block_number))

    async def get_block_with_tx_hashes(self, height: int) -> dict[str, Any] | None:
        block = to_plain(
            await self._call(
                f"block {height}",
                self.w3.eth.get_block(height, full_transactions=False),
            )
        )
        if not block:
            return None

        return {
            "number": int(block["number"]),
            "timestamp": int(block["timestamp"]),
            "txHashes": list(block.get("transactions") or []),
        }

    async def get_transaction(self, tx_hash: str) -> dict[str, Any] | None:
        tx = to_plain(
            await self._call(f"transaction {tx_hash}", self.w3.eth.get_transaction(tx_hash))
        )
        if not tx:
            return None

        return {
            "hash": tx["hash"],
            "from": tx.get("from") or "",
            "to": tx.get("to") or "",
            "value": int(tx.get("value") or 0),
            "gasPrice": int(tx.get("gasPrice") or 0),
            "data": tx.get("input") or tx.get("data") or "0x",
        }

    async def get_transaction_receipt(self, tx_hash: str) -> dict[str, Any] | None:
        return to_plain(
            await self._call(
                f"receipt {tx_hash}",
                self.w3.eth.get_transaction_receipt(tx_hash),
            )
        )
