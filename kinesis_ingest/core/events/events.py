"""
Connector event models.

These events represent immutable facts observed while ingesting, planning,
checkpointing and recovering. They are consumed by loggers, recorders, and
metrics sinks.
"""
from __future__ import annotations

from dataclasses import dataclass


@dataclass(slots=True)
class BlockStoredEvent:
    block_id: str
    shard_id: str
    num_records: int


@dataclass(slots=True)
class BlockRangeRecordedEvent:
    block_id: str
    stream_name: str
    shard_id: str
    start_sequence_number: str
    end_sequence_number: str | None


@dataclass(slots=True)
class BlockInvalidatedEvent:
    block_id: str


@dataclass(slots=True)
class BatchPlannedEvent:
    time: int
    num_partitions: int
    num_invalid: int


@dataclass(slots=True)
class CheckpointPersistedEvent:
    time: int
    path: str


@dataclass(slots=True)
class PartitionReadEvent:
    time: int
    index: int
    block_id: str
    read_path: str  # local | remote
    fallback: bool


@dataclass(slots=True)
class FetchRetryEvent:
    shard_id: str
    attempt: int
    error: str


@dataclass(slots=True)
class RangeFetchedEvent:
    shard_id: str
    start_sequence_number: str
    end_sequence_number: str | None
    num_records: int


@dataclass(slots=True)
class RecoveryModeEvent:
    prev_mode: str | None
    next_mode: str
    pending_batches: int


@dataclass(slots=True)
class BatchRecoveredEvent:
    time: int
    num_partitions: int
    num_records: int
