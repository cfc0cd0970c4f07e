"""Startup recovery from persisted batch plans.

After a restart the block cache is empty, so every persisted batch is
recomputed from its recorded sequence-number ranges alone. The recomputed
values must equal what the live run produced for the same ranges; a batch
that cannot be recomputed stops recovery instead of being skipped.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Generic, TypeVar

from kinesis_ingest.core.domain import recovery_state_machine as modes
from kinesis_ingest.core.domain.errors import RecoveryFailed
from kinesis_ingest.core.domain.types import sequence_key
from kinesis_ingest.core.events.events import BatchRecoveredEvent, RecoveryModeEvent

if TYPE_CHECKING:
    from kinesis_ingest.checkpoint.checkpoint_store import FileCheckpointStore
    from kinesis_ingest.core.domain.types import BatchPlan
    from kinesis_ingest.core.events.event_bus import EventBus
    from kinesis_ingest.streaming.materialize import PartitionMaterializer

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class RecoveredBatch(Generic[T]):
    """A persisted plan together with its recomputed partitions."""

    plan: BatchPlan
    partitions: list[list[T]]

    @property
    def num_records(self) -> int:
        return sum(len(p) for p in self.partitions)


class RecoveryCoordinator(Generic[T]):
    """Drives the LIVE / RECOVERING mode machine.

    Invariant:
    - in RECOVERING every partition is read by range, whatever its
      persisted ``is_valid`` flag says
    - batches are replayed in ascending time order
    - any replay failure moves to FAILED and is raised as RecoveryFailed
    """

    def __init__(
        self,
        *,
        checkpoint_store: FileCheckpointStore,
        materializer: PartitionMaterializer[T],
        event_bus: EventBus,
        max_workers: int | None = None,
    ) -> None:
        self._store = checkpoint_store
        self._materializer = materializer
        self._event_bus = event_bus
        self._max_workers = max_workers

        self._mode: str | None = None
        self._pending: list[BatchPlan] = []
        self._recovered_times: set[int] = set()
        self._failure: RecoveryFailed | None = None

    @property
    def mode(self) -> str | None:
        return self._mode

    @property
    def failure(self) -> RecoveryFailed | None:
        """The error that moved recovery to FAILED, if any."""
        return self._failure

    @property
    def pending_batches(self) -> int:
        return len(self._pending)

    def start(self) -> str:
        """Load the checkpoint and pick the initial mode."""
        plans = self._store.load_all()
        self._pending = plans
        self._transition(modes.RECOVERING if plans else modes.LIVE)
        return self._mode or modes.LIVE

    def recover(self) -> list[RecoveredBatch[T]]:
        """Replay every persisted batch, then switch to LIVE."""
        if self._mode != modes.RECOVERING:
            raise RuntimeError(f"recover() requires mode {modes.RECOVERING}, not {self._mode}")

        recovered: list[RecoveredBatch[T]] = []
        for plan in sorted(self._pending, key=lambda p: p.time):
            try:
                partitions = self._recompute(plan)
            except Exception as exc:
                LOGGER.error(
                    "Recovery failed",
                    extra={"time": plan.time, "error": str(exc)},
                )
                self._transition(modes.FAILED)
                self._failure = RecoveryFailed(plan.time, exc)
                raise self._failure from exc

            batch = RecoveredBatch(plan=plan, partitions=partitions)
            self._recovered_times.add(plan.time)
            self._event_bus.emit(
                BatchRecoveredEvent(
                    time=plan.time,
                    num_partitions=plan.num_partitions,
                    num_records=batch.num_records,
                )
            )
            recovered.append(batch)

        self._transition(modes.LIVE)
        LOGGER.info("Recovery complete", extra={"batches": len(recovered)})
        return recovered

    def get_or_compute(self, time: int) -> list[list[T]]:
        """Recompute a single persisted batch by range."""
        plan = self._store.load(time)
        return self._recompute(plan)

    def is_recovered(self, time: int) -> bool:
        return time in self._recovered_times or any(p.time == time for p in self._pending)

    def resume_positions(self) -> dict[str, str]:
        """Per shard, the highest closed end sequence number persisted.

        Live ingestion resumes after these so recovered ranges are not
        ingested twice.
        """
        positions: dict[str, str] = {}
        for plan in self._pending:
            for block in plan.partitions:
                for seq_range in block.ranges.ranges:
                    end = seq_range.end_sequence_number
                    if end is None:
                        continue
                    current = positions.get(seq_range.shard_id)
                    if current is None or sequence_key(end) > sequence_key(current):
                        positions[seq_range.shard_id] = end
        return positions

    # ------------------------------------------------------------------

    def _recompute(self, plan: BatchPlan) -> list[list[T]]:
        return self._materializer.materialize_all(
            plan,
            force_remote=True,
            max_workers=self._max_workers,
        )

    def _transition(self, next_mode: str) -> None:
        if not modes.is_valid_transition(self._mode, next_mode):
            raise RuntimeError(f"Invalid recovery transition {self._mode} -> {next_mode}")
        self._event_bus.emit(
            RecoveryModeEvent(
                prev_mode=self._mode,
                next_mode=next_mode,
                pending_batches=len(self._pending),
            )
        )
        LOGGER.info(
            "Recovery mode changed",
            extra={"prev_mode": self._mode, "next_mode": next_mode},
        )
        self._mode = next_mode
