"""Host-facing ingestion source.

``KinesisInputSource`` wires the receiver, the range tracker, the planner,
the checkpoint store, the range fetcher and the recovery coordinator
together behind the three calls a batch scheduler needs: ``start``,
``plan_batch`` and ``materialize``.
"""

# pylint: disable=too-many-instance-attributes,too-many-arguments
from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Callable, Generic, Iterator, TypeVar

from kinesis_ingest.checkpoint.checkpoint_store import FileCheckpointStore
from kinesis_ingest.config.connector_config import AwsCredentials, ConnectorConfig, StorageLevel
from kinesis_ingest.core.domain import recovery_state_machine as modes
from kinesis_ingest.core.domain.types import (
    BatchPlan,
    InitialPosition,
    RecordTransform,
    SourceRecord,
    raw_bytes,
)
from kinesis_ingest.core.events.event_bus import EventBus
from kinesis_ingest.core.events.events import BatchPlannedEvent
from kinesis_ingest.core.ports.block_store import BlockStore
from kinesis_ingest.core.ports.log_source import LogSource, ShardPosition
from kinesis_ingest.fetch.range_fetcher import RangeFetcher
from kinesis_ingest.planning.planner import plan_batch
from kinesis_ingest.recovery.coordinator import RecoveredBatch, RecoveryCoordinator
from kinesis_ingest.storage.memory_block_store import MemoryBlockStore
from kinesis_ingest.streaming.materialize import PartitionMaterializer
from kinesis_ingest.streaming.receiver import ShardReceiver
from kinesis_ingest.tracking.range_tracker import ShardRangeTracker

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class KinesisInputSource(Generic[T]):
    """Ingestion handle for one stream.

    Lifecycle:
    - ``start()`` recovers persisted batches (if any) and starts receiving
    - ``plan_batch(time)`` allocates received blocks to the batch and
      persists the plan before returning it
    - ``materialize(plan)`` returns one lazy reader per partition
    """

    def __init__(
        self,
        config: ConnectorConfig,
        *,
        source: LogSource | None = None,
        record_transform: Callable[[SourceRecord], T] | None = None,
        block_store: BlockStore | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self.config = config
        self.record_transform: RecordTransform = record_transform or raw_bytes
        self._event_bus = event_bus or EventBus()

        if source is None:
            # deferred so in-memory sources do not need boto3 configured
            from kinesis_ingest.source.kinesis_source import KinesisLogSource

            source = KinesisLogSource(
                endpoint_url=config.endpoint_url,
                region_name=config.region_name,
                credentials=config.credentials,
            )
        self._source = source

        self.tracker = ShardRangeTracker(self._event_bus)

        if block_store is None:
            block_store = MemoryBlockStore(
                max_blocks=config.max_cached_blocks,
                on_evict=self._on_block_evicted,
            )
        elif isinstance(block_store, MemoryBlockStore):
            block_store.set_eviction_listener(self._on_block_evicted)
        self.block_store = block_store

        self.fetcher: RangeFetcher[T] = RangeFetcher(
            source,
            event_bus=self._event_bus,
            record_transform=self.record_transform,
            retry_policy=config.to_retry_policy(),
            get_records_limit=config.get_records_limit,
        )

        self.materializer: PartitionMaterializer[T] = PartitionMaterializer(
            fetcher=self.fetcher,
            event_bus=self._event_bus,
            block_store=block_store,
            fallback_on_cache_miss=config.fallback_on_cache_miss,
        )

        self.checkpoint_store: FileCheckpointStore | None = None
        self.coordinator: RecoveryCoordinator[T] | None = None
        if config.checkpoint_dir is not None:
            self.checkpoint_store = FileCheckpointStore(
                Path(config.checkpoint_dir),
                event_bus=self._event_bus,
            )
            self.coordinator = RecoveryCoordinator(
                checkpoint_store=self.checkpoint_store,
                materializer=self.materializer,
                event_bus=self._event_bus,
            )

        self.receiver: ShardReceiver[T] | None = None
        self.recovered: list[RecoveredBatch[T]] = []

    # ------------------------------------------------------------------
    # Properties mirrored from the configuration
    # ------------------------------------------------------------------

    @property
    def stream_name(self) -> str:
        return self.config.stream_name

    @property
    def endpoint_url(self) -> str:
        return self.config.endpoint_url

    @property
    def region_name(self) -> str | None:
        return self.config.region_name

    @property
    def credentials(self) -> AwsCredentials | None:
        return self.config.credentials

    @property
    def storage_level(self) -> StorageLevel:
        return self.config.storage_level

    @property
    def retry_timeout_ms(self) -> int:
        return self.config.retry_timeout_ms

    @property
    def mode(self) -> str:
        if self.coordinator is None or self.coordinator.mode is None:
            return modes.LIVE
        return self.coordinator.mode

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def recover(self) -> list[RecoveredBatch[T]]:
        """Replay persisted batches when a checkpoint exists; idempotent.

        Raises RecoveryFailed again on every call once recovery has failed,
        so ``start()`` never resumes live ingestion past unrecovered batches.
        """
        if self.coordinator is not None and self.coordinator.mode == modes.FAILED:
            failure = self.coordinator.failure
            if failure is None:
                raise RuntimeError("Recovery is in mode failed")
            raise failure
        if self.coordinator is None or self.coordinator.mode is not None:
            return self.recovered
        if self.coordinator.start() == modes.RECOVERING:
            self.recovered = self.coordinator.recover()
        return self.recovered

    def build_receiver(self) -> ShardReceiver[T]:
        """Create the receiver, resuming after recovered ranges."""
        if self.receiver is None:
            resume = self.coordinator.resume_positions() if self.coordinator is not None else {}
            self.receiver = ShardReceiver(
                source=self._source,
                stream_name=self.config.stream_name,
                tracker=self.tracker,
                block_store=self.block_store,
                event_bus=self._event_bus,
                record_transform=self.record_transform,
                initial_position=ShardPosition(self.config.initial_position),
                resume_positions=resume,
                retry_policy=self.config.to_retry_policy(),
                get_records_limit=self.config.get_records_limit,
                poll_interval_ms=self.config.receiver_poll_interval_ms,
            )
        return self.receiver

    def start(self) -> None:
        self.recover()
        self.build_receiver().start()

    def stop(self) -> None:
        if self.receiver is not None:
            self.receiver.stop()
        self._event_bus.close()

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def plan_batch(self, time: int) -> BatchPlan:
        """Return the plan of batch ``time``, persisting it the first time.

        A time that is already checkpointed returns the persisted plan.
        """
        if self.checkpoint_store is not None and self.checkpoint_store.is_present(time):
            return self.checkpoint_store.load(time)

        plan = plan_batch(time, self.tracker.allocate_blocks_to_batch(time))

        if self.checkpoint_store is not None:
            self.checkpoint_store.persist(plan)

        self._event_bus.emit(
            BatchPlannedEvent(
                time=time,
                num_partitions=plan.num_partitions,
                num_invalid=sum(1 for p in plan.partitions if not p.is_valid),
            )
        )
        return plan

    def materialize(self, plan: BatchPlan) -> list[Iterator[T]]:
        """One lazy reader per partition, in plan order."""
        return self.materializer.materialize(plan, force_remote=self._must_refetch(plan))

    def materialize_all(self, plan: BatchPlan, max_workers: int | None = None) -> list[list[T]]:
        """Read all partitions in parallel and collect their values."""
        return self.materializer.materialize_all(
            plan,
            force_remote=self._must_refetch(plan),
            max_workers=max_workers,
        )

    def compute(self, time: int) -> list[list[T]]:
        """Plan, persist and read batch ``time``, then release older batches."""
        values = self.materialize_all(self.plan_batch(time))
        self.release_batches_before(time)
        return values

    def release_batches_before(self, time: int) -> list[str]:
        """Forget the tracking state and cached blocks of batches before ``time``.

        Their persisted plans stay readable; a later read of one goes by range.
        """
        released = self.tracker.forget_batches_before(time)
        for block_id in released:
            self.block_store.remove_block(block_id)
        return released

    # ------------------------------------------------------------------

    def _must_refetch(self, plan: BatchPlan) -> bool:
        # plans from a previous run reference blocks this process never cached
        return self.coordinator is not None and self.coordinator.is_recovered(plan.time)

    def _on_block_evicted(self, block_id: str) -> None:
        try:
            self.tracker.mark_invalid(block_id)
        except KeyError:
            LOGGER.debug("Evicted block is not tracked", extra={"block_id": block_id})


def create_ingestion_source(
    app_name: str,
    stream_name: str,
    endpoint_url: str,
    region_name: str | None,
    initial_position: InitialPosition,
    batch_interval_ms: int,
    storage_level: StorageLevel = "MEMORY_AND_DISK_2",
    credentials: AwsCredentials | None = None,
    record_transform: Callable[[SourceRecord], T] | None = None,
    *,
    source: LogSource | None = None,
    block_store: BlockStore | None = None,
    event_bus: EventBus | None = None,
    **settings: Any,
) -> KinesisInputSource[T]:
    """Build a KinesisInputSource from plain arguments.

    Extra keyword arguments are ConnectorConfig fields (``checkpoint_dir``,
    ``retry``, ``max_cached_blocks``, ...).
    """
    config = ConnectorConfig(
        app_name=app_name,
        stream_name=stream_name,
        endpoint_url=endpoint_url,
        region_name=region_name,
        initial_position=initial_position,
        batch_interval_ms=batch_interval_ms,
        storage_level=storage_level,
        credentials=credentials,
        **settings,
    )
    return KinesisInputSource(
        config,
        source=source,
        record_transform=record_transform,
        block_store=block_store,
        event_bus=event_bus,
    )
