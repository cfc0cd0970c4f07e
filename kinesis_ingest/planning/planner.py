from __future__ import annotations

from typing import Sequence

from kinesis_ingest.core.domain.types import BatchPlan, CachedBlock


def plan_batch(
    time: int,
    blocks: Sequence[CachedBlock],
) -> BatchPlan:
    """
    Build the ordered partition plan for one batch.

    This function performs *planning only*.
    It does not read blocks, does not touch the checkpoint, and does not
    talk to the log source.

    Guarantees:
    - one partition per input block, in input order
    - invalid blocks are kept (their ``is_valid=False`` is meaningful to
      the read path)
    - an empty input yields a plan with zero partitions

    Parameters
    ----------
    time:
        Batch time in milliseconds.

    blocks:
        Snapshots of the blocks allocated to this batch, in allocation order.

    Returns
    -------
    BatchPlan
        Immutable plan, ready to be checkpointed.
    """

    if time < 0:
        raise ValueError("time must be >= 0")

    return BatchPlan(
        time=time,
        partitions=tuple(blocks),
    )
