"""
Semantic test: recovery replays persisted batches by range.

Invariant:
After a restart with an empty cache, every persisted batch is recomputed
from its recorded ranges alone and yields exactly the values the live run
produced for it. A batch that cannot be re-read fails recovery instead of
being skipped.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from kinesis_ingest.checkpoint.checkpoint_store import FileCheckpointStore
from kinesis_ingest.core.domain import recovery_state_machine as modes
from kinesis_ingest.core.domain.errors import CheckpointCorrupt, RangeUnavailable, RecoveryFailed
from kinesis_ingest.core.domain.types import BatchPlan, CachedBlock
from kinesis_ingest.core.events.sinks.null_event_bus import NullEventBus
from kinesis_ingest.source.memory_source import InMemoryLogSource
from kinesis_ingest.streaming.input_source import KinesisInputSource, create_ingestion_source

STREAM = "numbers"
ENDPOINT = "https://kinesis.us-east-1.amazonaws.com"


def as_int(record) -> int:
    return int(record.data)


def mk_input(source: InMemoryLogSource, checkpoint_dir: Path, **settings: Any) -> KinesisInputSource[int]:
    return create_ingestion_source(
        "numbers-app",
        STREAM,
        ENDPOINT,
        None,
        "TRIM_HORIZON",
        1000,
        record_transform=as_int,
        source=source,
        checkpoint_dir=str(checkpoint_dir),
        **settings,
    )


def run_live_batches(source: InMemoryLogSource, checkpoint_dir: Path) -> dict[int, list[list[int]]]:
    """First run: ingest two batches and return what each one computed."""
    live = mk_input(source, checkpoint_dir)
    assert live.recover() == []
    assert live.mode == modes.LIVE

    receiver = live.build_receiver()
    computed: dict[int, list[list[int]]] = {}

    source.push_data(STREAM, range(1, 11))
    receiver.poll_once()
    computed[1000] = live.compute(1000)

    source.push_data(STREAM, range(11, 21), aggregate=True)
    receiver.poll_once()
    computed[2000] = live.compute(2000)

    live.stop()
    return computed


def test_restart_recomputes_identical_values(tmp_path: Path) -> None:
    source = InMemoryLogSource()
    source.create_stream(STREAM, shard_count=2)

    computed = run_live_batches(source, tmp_path)

    # Restart: new process state, same checkpoint and stream
    restarted = mk_input(source, tmp_path)
    recovered = restarted.recover()

    assert restarted.mode == modes.LIVE
    assert [batch.plan.time for batch in recovered] == [1000, 2000]
    for batch in recovered:
        assert batch.partitions == computed[batch.plan.time]

    flat = sorted(v for batch in recovered for part in batch.partitions for v in part)
    assert flat == list(range(1, 21))


def test_recovered_batch_is_served_by_range(tmp_path: Path) -> None:
    source = InMemoryLogSource()
    source.create_stream(STREAM, shard_count=2)
    computed = run_live_batches(source, tmp_path)

    restarted = mk_input(source, tmp_path)
    restarted.recover()

    plan = restarted.plan_batch(1000)

    assert plan == FileCheckpointStore(tmp_path, event_bus=NullEventBus()).load(1000)
    assert restarted.materialize_all(plan) == computed[1000]


def test_live_ingestion_resumes_after_recovered_ranges(tmp_path: Path) -> None:
    source = InMemoryLogSource()
    source.create_stream(STREAM, shard_count=2)
    run_live_batches(source, tmp_path)

    restarted = mk_input(source, tmp_path)
    restarted.recover()
    receiver = restarted.build_receiver()

    # Nothing new on the stream: recovered records are not ingested again
    assert receiver.poll_once() == []

    source.push_data(STREAM, [21, 22, 23])
    receiver.poll_once()

    fresh = restarted.compute(3000)
    assert sorted(v for part in fresh for v in part) == [21, 22, 23]


def test_unreadable_range_fails_recovery(tmp_path: Path) -> None:
    source = InMemoryLogSource()
    source.create_stream(STREAM, shard_count=2)
    run_live_batches(source, tmp_path)

    restarted = mk_input(
        source,
        tmp_path,
        retry={"max_attempts": 3, "initial_wait_ms": 1, "max_wait_ms": 2, "timeout_ms": 100},
    )
    source.throttle_forever()

    with pytest.raises(RecoveryFailed) as info:
        restarted.recover()

    assert info.value.time == 1000
    assert isinstance(info.value.cause, RangeUnavailable)
    assert restarted.mode == modes.FAILED


def test_corrupt_checkpoint_stops_startup(tmp_path: Path) -> None:
    source = InMemoryLogSource()
    source.create_stream(STREAM, shard_count=1)
    (tmp_path / "batch-00000000000000001000.json").write_text("[]", encoding="utf-8")

    with pytest.raises(CheckpointCorrupt):
        mk_input(source, tmp_path).recover()


def test_block_without_ranges_fails_recovery(tmp_path: Path) -> None:
    source = InMemoryLogSource()
    source.create_stream(STREAM, shard_count=1)
    FileCheckpointStore(tmp_path, event_bus=NullEventBus()).persist(
        BatchPlan(time=1000, partitions=(CachedBlock(block_id="orphan"),))
    )

    with pytest.raises(RecoveryFailed):
        mk_input(source, tmp_path).recover()


def test_recovery_without_checkpoint_dir_is_live() -> None:
    source = InMemoryLogSource()
    source.create_stream(STREAM, shard_count=1)
    live = create_ingestion_source(
        "numbers-app", STREAM, ENDPOINT, None, "TRIM_HORIZON", 1000, source=source
    )

    assert live.recover() == []
    assert live.mode == modes.LIVE


def test_failed_recovery_keeps_failing(tmp_path: Path) -> None:
    source = InMemoryLogSource()
    source.create_stream(STREAM, shard_count=2)
    run_live_batches(source, tmp_path)

    restarted = mk_input(
        source,
        tmp_path,
        retry={"max_attempts": 3, "initial_wait_ms": 1, "max_wait_ms": 2, "timeout_ms": 100},
    )
    source.throttle_forever()
    with pytest.raises(RecoveryFailed):
        restarted.recover()

    # The source is healthy again, but the unrecovered batches are not skipped
    source.throttle_forever(False)
    with pytest.raises(RecoveryFailed) as info:
        restarted.recover()
    with pytest.raises(RecoveryFailed):
        restarted.start()

    assert info.value.time == 1000
    assert restarted.mode == modes.FAILED
    assert restarted.receiver is None


def test_transform_error_during_replay_fails_recovery(tmp_path: Path) -> None:
    source = InMemoryLogSource()
    source.create_stream(STREAM, shard_count=2)
    run_live_batches(source, tmp_path)

    def reject(record) -> int:
        raise ValueError(f"cannot parse {record.data!r}")

    restarted = create_ingestion_source(
        "numbers-app",
        STREAM,
        ENDPOINT,
        None,
        "TRIM_HORIZON",
        1000,
        record_transform=reject,
        source=source,
        checkpoint_dir=str(tmp_path),
    )

    with pytest.raises(RecoveryFailed) as info:
        restarted.recover()

    assert info.value.time == 1000
    assert isinstance(info.value.cause, ValueError)
    assert restarted.mode == modes.FAILED


def test_single_batch_is_recomputed_on_demand(tmp_path: Path) -> None:
    source = InMemoryLogSource()
    source.create_stream(STREAM, shard_count=2)
    computed = run_live_batches(source, tmp_path)

    restarted = mk_input(source, tmp_path)

    assert restarted.coordinator is not None
    assert restarted.coordinator.get_or_compute(2000) == computed[2000]
    assert restarted.coordinator.get_or_compute(1000) == computed[1000]
