"""
Semantic test: batch planning.

Invariant:
A plan has exactly one partition per allocated block, in allocation order.
Invalid blocks are kept; an empty allocation yields an empty plan.
"""

from __future__ import annotations

import pytest

from kinesis_ingest.core.domain.types import (
    CachedBlock,
    SequenceNumberRange,
    SequenceNumberRanges,
)
from kinesis_ingest.planning.planner import plan_batch


def mk_block(block_id: str, start: str, end: str, is_valid: bool = True) -> CachedBlock:
    return CachedBlock(
        block_id=block_id,
        ranges=SequenceNumberRanges.of(
            SequenceNumberRange(
                stream_name="clicks",
                shard_id="shardId-000000000000",
                start_sequence_number=start,
                end_sequence_number=end,
            )
        ),
        is_valid=is_valid,
    )


def test_empty_allocation_yields_empty_plan() -> None:
    plan = plan_batch(1000, [])

    assert plan.time == 1000
    assert plan.num_partitions == 0
    assert plan.partitions == ()


def test_partition_order_follows_block_order() -> None:
    blocks = [
        mk_block("b-2", "300", "400"),
        mk_block("b-0", "100", "150"),
        mk_block("b-1", "200", "250"),
    ]

    plan = plan_batch(2000, blocks)

    assert [p.block_id for p in plan.partitions] == ["b-2", "b-0", "b-1"]
    assert plan.ranges_per_partition() == [b.ranges for b in blocks]


def test_invalid_blocks_are_kept_with_their_flag() -> None:
    blocks = [
        mk_block("b-0", "100", "150"),
        mk_block("b-1", "200", "250", is_valid=False),
    ]

    plan = plan_batch(3000, blocks)

    assert plan.num_partitions == 2
    assert plan.partitions[1].is_valid is False
    assert not plan.partitions[1].ranges.is_empty()


def test_negative_time_is_rejected() -> None:
    with pytest.raises(ValueError):
        plan_batch(-1, [])
