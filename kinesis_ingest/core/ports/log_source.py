"""Log source protocol for shard reads.

This module defines the abstract boundary to the sharded, sequence-numbered
log source. Concrete implementations adapt Kinesis (boto3) or an in-memory
fake to this protocol. Shard discovery and lease balancing stay on the other
side of this boundary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Protocol

PositionType = Literal[
    "LATEST",
    "TRIM_HORIZON",
    "AT_SEQUENCE_NUMBER",
    "AFTER_SEQUENCE_NUMBER",
]

_SEQUENCE_POSITIONS: frozenset[str] = frozenset({"AT_SEQUENCE_NUMBER", "AFTER_SEQUENCE_NUMBER"})


@dataclass(frozen=True, slots=True)
class ShardPosition:
    """Where a new shard iterator starts reading."""

    position_type: PositionType
    sequence_number: str | None = None

    def __post_init__(self) -> None:
        needs_seq = self.position_type in _SEQUENCE_POSITIONS
        if needs_seq and self.sequence_number is None:
            raise ValueError(f"{self.position_type} requires a sequence_number")
        if not needs_seq and self.sequence_number is not None:
            raise ValueError(f"{self.position_type} does not take a sequence_number")

    @classmethod
    def latest(cls) -> ShardPosition:
        return cls("LATEST")

    @classmethod
    def trim_horizon(cls) -> ShardPosition:
        return cls("TRIM_HORIZON")

    @classmethod
    def at_sequence_number(cls, sequence_number: str) -> ShardPosition:
        return cls("AT_SEQUENCE_NUMBER", sequence_number)

    @classmethod
    def after_sequence_number(cls, sequence_number: str) -> ShardPosition:
        return cls("AFTER_SEQUENCE_NUMBER", sequence_number)


@dataclass(frozen=True, slots=True)
class PhysicalRecord:
    """A record exactly as stored by the source.

    ``data`` may be a KPL aggregate encoding several logical records.
    """

    sequence_number: str
    partition_key: str
    data: bytes
    approximate_arrival_timestamp: float | None = None


@dataclass(frozen=True, slots=True)
class GetRecordsResult:
    """One page of records plus the iterator for the next page.

    ``next_iterator`` is None once the shard is closed and fully read.
    """

    records: list[PhysicalRecord] = field(default_factory=list)
    next_iterator: str | None = None
    millis_behind_latest: int | None = None

    def is_exhausted(self) -> bool:
        """Return True if the source reports nothing more to read right now."""
        if self.records:
            return False
        if self.next_iterator is None:
            return True
        return not self.millis_behind_latest


class LogSource(Protocol):
    """Source-facing boundary used by the receiver and the range fetcher.

    Implementations raise ``SourceThrottled`` / ``SourceTransientError`` for
    retryable failures and ``ShardIteratorExpired`` for stale iterators.
    """

    def list_shards(self, stream_name: str) -> set[str]:
        """Return the ids of all shards of the stream."""

    def open_shard_iterator(
        self,
        stream_name: str,
        shard_id: str,
        position: ShardPosition,
    ) -> str:
        """Return an opaque iterator positioned inside the shard."""

    def get_records(self, iterator: str, limit: int) -> GetRecordsResult:
        """Return up to ``limit`` physical records from ``iterator``."""

    def close_shard_iterator(self, iterator: str) -> None:
        """Release any source-side state held for ``iterator``."""
