"""In-process block cache."""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from typing import Any, Callable, Sequence

LOGGER = logging.getLogger(__name__)


class MemoryBlockStore:
    """Bounded LRU cache of decoded blocks.

    When ``max_blocks`` is exceeded the least recently used block is dropped
    and ``on_evict(block_id)`` is called, which is how the eviction policy
    tells the range tracker that a block's cache copy is gone.
    """

    def __init__(
        self,
        *,
        max_blocks: int | None = None,
        on_evict: Callable[[str], None] | None = None,
    ) -> None:
        if max_blocks is not None and max_blocks <= 0:
            raise ValueError("max_blocks must be > 0")
        self._max_blocks = max_blocks
        self._on_evict = on_evict
        self._blocks: OrderedDict[str, tuple[Any, ...]] = OrderedDict()
        self._lock = threading.Lock()

    def set_eviction_listener(self, on_evict: Callable[[str], None]) -> None:
        self._on_evict = on_evict

    def put_block(self, block_id: str, values: Sequence[Any]) -> None:
        evicted: list[str] = []
        with self._lock:
            self._blocks[block_id] = tuple(values)
            self._blocks.move_to_end(block_id)
            while self._max_blocks is not None and len(self._blocks) > self._max_blocks:
                old_id, _ = self._blocks.popitem(last=False)
                evicted.append(old_id)

        for block_id_evicted in evicted:
            LOGGER.debug("Block evicted", extra={"block_id": block_id_evicted})
            if self._on_evict is not None:
                self._on_evict(block_id_evicted)

    def get_block(self, block_id: str) -> list[Any] | None:
        with self._lock:
            values = self._blocks.get(block_id)
            if values is None:
                return None
            self._blocks.move_to_end(block_id)
            return list(values)

    def remove_block(self, block_id: str) -> None:
        with self._lock:
            self._blocks.pop(block_id, None)

    def clear(self) -> None:
        """Drop every block without notifying the eviction listener."""
        with self._lock:
            self._blocks.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._blocks)

    def __contains__(self, block_id: object) -> bool:
        with self._lock:
            return block_id in self._blocks
