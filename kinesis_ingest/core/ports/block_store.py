"""Block store protocol.

The local cache of ingested blocks. The store is ephemeral: blocks may be
evicted at any time and all of them are gone after a process restart.
"""

from __future__ import annotations

from typing import Any, Protocol, Sequence


class BlockStore(Protocol):
    """Local cache boundary used by the receiver and the materializer."""

    def put_block(self, block_id: str, values: Sequence[Any]) -> None:
        """Store the decoded values of a block."""

    def get_block(self, block_id: str) -> list[Any] | None:
        """Return the block's values, or None on a cache miss."""

    def remove_block(self, block_id: str) -> None:
        """Drop a block from the cache (no-op if absent)."""
