"""Connector error taxonomy.

Transient source errors (``SourceThrottled``, ``SourceTransientError``) are
absorbed by the range fetcher's retry loop. Everything else propagates to the
caller as a typed failure so the host scheduler can apply its own batch retry
policy.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from kinesis_ingest.core.domain.types import SequenceNumberRange


class ConnectorError(Exception):
    """Base class for all connector errors."""


# ---------------------------------------------------------------------------
# Source errors
# ---------------------------------------------------------------------------


class SourceThrottled(ConnectorError):
    """The log source rejected a call because of throughput limits."""


class SourceTransientError(ConnectorError):
    """A soft, retryable source failure (5xx, connection reset, ...)."""


class ShardIteratorExpired(ConnectorError):
    """The shard iterator handed to get_records is no longer valid."""


class RangeUnavailable(ConnectorError):
    """The source could not return data for a range within the retry cap."""

    def __init__(
        self,
        seq_range: SequenceNumberRange,
        *,
        attempts: int,
        elapsed_ms: float,
        last_error: BaseException | None = None,
    ) -> None:
        self.seq_range = seq_range
        self.attempts = attempts
        self.elapsed_ms = elapsed_ms
        self.last_error = last_error
        super().__init__(
            f"Range {seq_range.stream_name}/{seq_range.shard_id} "
            f"[{seq_range.start_sequence_number}, {seq_range.end_sequence_number}] "
            f"unavailable after {attempts} attempts in {elapsed_ms:.0f} ms: {last_error}"
        )


class FetchCancelled(ConnectorError):
    """An in-flight range read was cancelled by its enclosing computation."""


class CorruptAggregateRecord(ConnectorError):
    """A record has a valid aggregate header and digest but an undecodable body."""


# ---------------------------------------------------------------------------
# Tracking / materialization errors
# ---------------------------------------------------------------------------


class InvalidBlockNoRange(ConnectorError):
    """A block must be read by range but carries no recorded range."""

    def __init__(self, block_id: str) -> None:
        self.block_id = block_id
        super().__init__(
            f"Block {block_id} cannot be read from cache and has no recorded "
            "sequence number ranges"
        )


class BlockCacheMiss(ConnectorError):
    """A valid block was not in the cache and range fallback is disabled."""

    def __init__(self, block_id: str) -> None:
        self.block_id = block_id
        super().__init__(f"Block {block_id} is marked valid but missing from the block store")


# ---------------------------------------------------------------------------
# Checkpoint / recovery errors
# ---------------------------------------------------------------------------


class CheckpointCorrupt(ConnectorError):
    """A persisted batch plan could not be parsed."""


class CheckpointConflict(ConnectorError):
    """A different plan was already persisted for the same batch time."""


class RecoveryFailed(ConnectorError):
    """Replaying a persisted batch failed; recovery must not continue."""

    def __init__(self, time: int, cause: BaseException) -> None:
        self.time = time
        self.cause = cause
        super().__init__(f"Recovery of batch {time} failed: {cause}")
