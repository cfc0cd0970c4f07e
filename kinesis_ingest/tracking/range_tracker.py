"""Block-to-range tracking registry.

This module maintains, for every ingested block, the ordered list of
sequence-number ranges the block contains and whether its local cache copy is
still usable. The receiver appends to it from its own thread while the batch
scheduler takes snapshots, so every operation runs under one lock.

Ranges are only ever appended; invalidation flips a flag and never touches
the recorded ranges.
"""

# pylint: disable=missing-function-docstring
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterable

from kinesis_ingest.core.domain.types import (
    CachedBlock,
    SequenceNumberRange,
    SequenceNumberRanges,
)
from kinesis_ingest.core.events.events import (
    BlockInvalidatedEvent,
    BlockRangeRecordedEvent,
)

if TYPE_CHECKING:
    from kinesis_ingest.core.events.event_bus import EventBus

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class _BlockEntry:
    """Mutable per-block tracking state (never persisted directly)."""

    block_id: str
    ranges: list[SequenceNumberRange] = field(default_factory=list)
    is_valid: bool = True
    allocated_to: int | None = None

    def snapshot(self) -> CachedBlock:
        return CachedBlock(
            block_id=self.block_id,
            ranges=SequenceNumberRanges(ranges=tuple(self.ranges)),
            is_valid=self.is_valid,
        )


class ShardRangeTracker:
    """Thread-safe registry of block -> sequence number ranges.

    Invariants:
    - blocks keep arrival order; snapshots list them in that order
    - a recorded range is never removed or rewritten
    - ``is_valid`` goes true -> false at most once
    - a block is allocated to at most one batch time
    - released batches and their blocks are gone for good
    """

    def __init__(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus
        self._lock = threading.RLock()
        self._blocks: dict[str, _BlockEntry] = {}
        self._batches: dict[int, tuple[str, ...]] = {}
        self._released_before = 0

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def register_block(
        self,
        block_id: str,
        ranges: Iterable[SequenceNumberRange] = (),
    ) -> None:
        """Register a block (if new) and append its ranges."""
        with self._lock:
            if block_id not in self._blocks:
                self._blocks[block_id] = _BlockEntry(block_id=block_id)
            for seq_range in ranges:
                self.record_range(block_id, seq_range)

    def record_range(self, block_id: str, seq_range: SequenceNumberRange) -> None:
        """Append a range to a block's range list, registering the block if needed."""
        with self._lock:
            entry = self._blocks.get(block_id)
            if entry is None:
                entry = _BlockEntry(block_id=block_id)
                self._blocks[block_id] = entry
            entry.ranges.append(seq_range)
            self._event_bus.emit(
                BlockRangeRecordedEvent(
                    block_id=block_id,
                    stream_name=seq_range.stream_name,
                    shard_id=seq_range.shard_id,
                    start_sequence_number=seq_range.start_sequence_number,
                    end_sequence_number=seq_range.end_sequence_number,
                )
            )

    def mark_invalid(self, block_id: str) -> bool:
        """Mark a block's cache copy unusable.

        Idempotent. Returns True only for the call that flipped the flag.
        """
        with self._lock:
            entry = self._require(block_id)
            if not entry.is_valid:
                return False
            entry.is_valid = False
            self._event_bus.emit(BlockInvalidatedEvent(block_id=block_id))

        LOGGER.debug("Block marked invalid", extra={"block_id": block_id})
        return True

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def is_valid(self, block_id: str) -> bool:
        with self._lock:
            return self._require(block_id).is_valid

    def ranges_for(self, block_id: str) -> SequenceNumberRanges:
        with self._lock:
            return SequenceNumberRanges(ranges=tuple(self._require(block_id).ranges))

    def block_ids(self) -> list[str]:
        with self._lock:
            return list(self._blocks)

    def snapshot(self, block_ids: Iterable[str] | None = None) -> list[CachedBlock]:
        """Return consistent CachedBlock snapshots.

        With ``block_ids`` the result follows that order; otherwise arrival
        order. Validity is the validity at snapshot time only.
        """
        with self._lock:
            if block_ids is None:
                return [entry.snapshot() for entry in self._blocks.values()]
            return [self._require(block_id).snapshot() for block_id in block_ids]

    # ------------------------------------------------------------------
    # Batch allocation
    # ------------------------------------------------------------------

    def allocate_blocks_to_batch(self, time: int) -> list[CachedBlock]:
        """Hand every unallocated block to batch ``time`` and snapshot them.

        Asking again for an already allocated time returns the same blocks
        (with their current validity) and allocates nothing new.
        """
        with self._lock:
            allocated = self._batches.get(time)
            if allocated is None:
                if time < self._released_before:
                    raise KeyError(f"Batch {time} was already released")
                allocated = tuple(
                    entry.block_id
                    for entry in self._blocks.values()
                    if entry.allocated_to is None
                )
                for block_id in allocated:
                    self._blocks[block_id].allocated_to = time
                self._batches[time] = allocated
            return self.snapshot(allocated)

    def blocks_for_batch(self, time: int) -> list[CachedBlock]:
        with self._lock:
            if time not in self._batches:
                raise KeyError(f"No blocks allocated to batch {time}")
            return self.snapshot(self._batches[time])

    def forget_batches_before(self, time: int) -> list[str]:
        """Drop every batch older than ``time`` together with its blocks.

        Returns the ids of the dropped blocks. A dropped batch cannot be
        allocated again; its persisted plan still carries the ranges.
        """
        with self._lock:
            done = sorted(t for t in self._batches if t < time)
            dropped: list[str] = []
            for batch_time in done:
                for block_id in self._batches.pop(batch_time):
                    if self._blocks.pop(block_id, None) is not None:
                        dropped.append(block_id)
            self._released_before = max(self._released_before, time)

        if dropped:
            LOGGER.debug("Released batches", extra={"before": time, "blocks": len(dropped)})
        return dropped

    def unallocated_count(self) -> int:
        with self._lock:
            return sum(1 for entry in self._blocks.values() if entry.allocated_to is None)

    # ------------------------------------------------------------------

    def _require(self, block_id: str) -> _BlockEntry:
        entry = self._blocks.get(block_id)
        if entry is None:
            raise KeyError(f"Unknown block: {block_id}")
        return entry
