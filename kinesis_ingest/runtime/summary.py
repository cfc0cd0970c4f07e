from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List

if TYPE_CHECKING:
    from kinesis_ingest.core.domain.types import BatchPlan


# ---------------------------------------------------------------------------
# Data models
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class BatchSummary:
    time: int
    partition_count: int
    range_count: int
    invalid_blocks: int
    open_ranges: int
    shards: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class CheckpointSummary:
    batch_count: int
    empty_batches: int
    total_partitions: int
    first_time: int | None
    last_time: int | None
    batches: List[BatchSummary]
    warnings: List[str]


# ---------------------------------------------------------------------------
# Summary builder
# ---------------------------------------------------------------------------

def summarize_checkpoint(plans: list[BatchPlan]) -> CheckpointSummary:
    warnings: list[str] = []
    batches: list[BatchSummary] = []

    if not plans:
        warnings.append("Checkpoint contains no batches (startup will be LIVE)")

    for plan in plans:
        ranges = [r for block in plan.partitions for r in block.ranges.ranges]
        invalid = sum(1 for block in plan.partitions if not block.is_valid)
        open_ranges = sum(1 for r in ranges if r.is_open)
        no_range = [block.block_id for block in plan.partitions if block.ranges.is_empty()]

        if open_ranges:
            warnings.append(
                f"batch {plan.time} has {open_ranges} open range(s); "
                "recovery reads them up to the current tip"
            )

        if no_range:
            warnings.append(
                f"batch {plan.time} has block(s) without ranges "
                f"({', '.join(no_range)}); recovery will fail"
            )

        batches.append(
            BatchSummary(
                time=plan.time,
                partition_count=plan.num_partitions,
                range_count=len(ranges),
                invalid_blocks=invalid,
                open_ranges=open_ranges,
                shards=tuple(sorted({r.shard_id for r in ranges})),
            )
        )

    return CheckpointSummary(
        batch_count=len(plans),
        empty_batches=sum(1 for p in plans if not p.partitions),
        total_partitions=sum(p.num_partitions for p in plans),
        first_time=plans[0].time if plans else None,
        last_time=plans[-1].time if plans else None,
        batches=batches,
        warnings=warnings,
    )


# ---------------------------------------------------------------------------
# Pretty printer
# ---------------------------------------------------------------------------

def print_checkpoint_summary(summary: CheckpointSummary) -> None:
    print(f"Batches: {summary.batch_count}")
    print(f"Empty batches: {summary.empty_batches}")
    print(f"Total partitions: {summary.total_partitions}")
    print(f"Time span: {summary.first_time} .. {summary.last_time}")
    print()

    if summary.warnings:
        print("Warnings:")
        for w in summary.warnings:
            print(f"  - {w}")
        print()

    print("Batches:")
    for b in summary.batches:
        print(
            f"  - {b.time}: "
            f"{b.partition_count} partitions | "
            f"{b.range_count} ranges | "
            f"{b.invalid_blocks} invalid | "
            f"shards {', '.join(b.shards) or '-'}"
        )
