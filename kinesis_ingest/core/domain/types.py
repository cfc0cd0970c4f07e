"""Core shared data models and schemas.

This module defines the canonical Pydantic models describing what a batch
consumed from the log source: sequence-number ranges, the cached blocks that
carry them, and the per-batch partition plan. These types are the source of
truth for the persisted checkpoint record (see
``kinesis_ingest/core/schemas/batch_plan.schema.json``).

Read models ignore unknown fields so that checkpoints written by a newer
version stay readable.
"""

# pylint: disable=missing-class-docstring,missing-function-docstring
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CHECKPOINT_FORMAT_VERSION: int = 1

# ---------------------------------------------------------------------------
# Sequence numbers
# ---------------------------------------------------------------------------


def sequence_key(sequence_number: str) -> int:
    """Return the numeric ordering key of a sequence number.

    Sequence numbers are decimal strings that exceed 64 bits, so lexical
    order is wrong; compare them as Python ints.
    """
    return int(sequence_number)


class SequenceNumberRange(BaseModel):
    """A span of sequence numbers within one shard.

    ``end_sequence_number`` is None while the range is still growing.
    """

    stream_name: str = Field(..., min_length=1)
    shard_id: str = Field(..., min_length=1)
    start_sequence_number: str = Field(..., min_length=1)
    end_sequence_number: str | None = Field(default=None, min_length=1)

    model_config = ConfigDict(frozen=True, extra="ignore")

    @field_validator("start_sequence_number", "end_sequence_number")
    @classmethod
    def _validate_decimal(cls, value: str | None) -> str | None:
        if value is not None and not value.isdigit():
            raise ValueError(f"sequence number must be a decimal string, got {value!r}")
        return value

    @model_validator(mode="after")
    def validate_bounds(self) -> SequenceNumberRange:
        if self.end_sequence_number is not None:
            if sequence_key(self.end_sequence_number) < sequence_key(self.start_sequence_number):
                raise ValueError(
                    "end_sequence_number must be >= start_sequence_number "
                    f"({self.end_sequence_number} < {self.start_sequence_number})"
                )
        return self

    @property
    def is_open(self) -> bool:
        return self.end_sequence_number is None


class SequenceNumberRanges(BaseModel):
    """Ordered ranges belonging to a single cached block."""

    ranges: tuple[SequenceNumberRange, ...] = ()

    model_config = ConfigDict(frozen=True, extra="ignore")

    @classmethod
    def of(cls, *ranges: SequenceNumberRange) -> SequenceNumberRanges:
        return cls(ranges=tuple(ranges))

    def is_empty(self) -> bool:
        return not self.ranges


# ---------------------------------------------------------------------------
# Blocks and plans
# ---------------------------------------------------------------------------


class CachedBlock(BaseModel):
    """Snapshot of a locally cached block and the ranges it contains."""

    block_id: str = Field(..., min_length=1)
    ranges: SequenceNumberRanges = Field(default_factory=SequenceNumberRanges)
    is_valid: bool = True

    model_config = ConfigDict(frozen=True, extra="ignore")


class BatchPlan(BaseModel):
    """Ordered partition plan of one batch.

    Partition order determines partition-to-index assignment downstream and
    is preserved identically across a persist/reload cycle.
    """

    time: int = Field(..., ge=0, description="Batch time in milliseconds.")
    partitions: tuple[CachedBlock, ...] = ()
    format_version: int = CHECKPOINT_FORMAT_VERSION

    model_config = ConfigDict(frozen=True, extra="ignore")

    @property
    def num_partitions(self) -> int:
        return len(self.partitions)

    def ranges_per_partition(self) -> list[SequenceNumberRanges]:
        return [p.ranges for p in self.partitions]

    def to_checkpoint_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_checkpoint_obj(cls, obj: Any) -> BatchPlan:
        return cls.model_validate(obj)


# ---------------------------------------------------------------------------
# Source records
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class SourceRecord:
    """One logical record as delivered to the record transform.

    Aggregated physical records expand into several SourceRecords sharing the
    same ``sequence_number`` and distinguished by ``sub_sequence_number``.
    """

    data: bytes
    sequence_number: str
    partition_key: str
    shard_id: str = ""
    sub_sequence_number: int = 0
    explicit_hash_key: str | None = None
    approximate_arrival_timestamp: float | None = None


RecordTransform = Callable[[SourceRecord], Any]


def raw_bytes(record: SourceRecord) -> bytes:
    """Default transform: the record payload bytes."""
    return record.data


InitialPosition = Literal["LATEST", "TRIM_HORIZON"]
