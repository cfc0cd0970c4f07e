"""Partition read path.

Each partition of a BatchPlan is read either from its cached block or, by
range, from the log source. The choice is made once per partition when the
plan is materialized and is recorded as a ``ReadPath``.
"""

# pylint: disable=too-many-arguments
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Generic, Iterator, TypeVar, Union

from kinesis_ingest.core.domain.errors import BlockCacheMiss, InvalidBlockNoRange
from kinesis_ingest.core.events.events import PartitionReadEvent

if TYPE_CHECKING:
    from kinesis_ingest.core.domain.types import BatchPlan, CachedBlock, SequenceNumberRanges
    from kinesis_ingest.core.events.event_bus import EventBus
    from kinesis_ingest.core.ports.block_store import BlockStore
    from kinesis_ingest.fetch.range_fetcher import RangeFetcher

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class LocalRead:
    """Read the partition from values captured out of the block store."""

    block_id: str
    values: tuple[Any, ...]


@dataclass(frozen=True, slots=True)
class RemoteRead:
    """Re-fetch the partition from the log source by range.

    ``fallback`` is True when the block was valid at plan time but its cache
    copy was missing at read time.
    """

    block_id: str
    ranges: SequenceNumberRanges
    fallback: bool = False


ReadPath = Union[LocalRead, RemoteRead]


class PartitionMaterializer(Generic[T]):
    """Turns a BatchPlan into one lazy iterator per partition."""

    def __init__(
        self,
        *,
        fetcher: RangeFetcher[T],
        event_bus: EventBus,
        block_store: BlockStore | None = None,
        fallback_on_cache_miss: bool = True,
        timeout_ms: int | None = None,
    ) -> None:
        self._fetcher = fetcher
        self._event_bus = event_bus
        self._block_store = block_store
        self._fallback_on_cache_miss = fallback_on_cache_miss
        self._timeout_ms = timeout_ms

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self, block: CachedBlock, *, force_remote: bool = False) -> ReadPath:
        """Pick the read path of one partition.

        Raises:
            InvalidBlockNoRange:
                The block has to be read by range but has no recorded range.
            BlockCacheMiss:
                A valid block is missing and fallback is disabled.
        """
        if not force_remote and block.is_valid and self._block_store is not None:
            values = self._block_store.get_block(block.block_id)
            if values is not None:
                return LocalRead(block_id=block.block_id, values=tuple(values))

            if not self._fallback_on_cache_miss:
                raise BlockCacheMiss(block.block_id)

            LOGGER.info(
                "Cache miss on valid block; falling back to range fetch",
                extra={"block_id": block.block_id},
            )
            return self._remote(block, fallback=True)

        return self._remote(block, fallback=False)

    @staticmethod
    def _remote(block: CachedBlock, *, fallback: bool) -> RemoteRead:
        if block.ranges.is_empty():
            raise InvalidBlockNoRange(block.block_id)
        return RemoteRead(block_id=block.block_id, ranges=block.ranges, fallback=fallback)

    # ------------------------------------------------------------------
    # Reading
    # ------------------------------------------------------------------

    def read(self, path: ReadPath, cancel: threading.Event | None = None) -> Iterator[T]:
        if isinstance(path, LocalRead):
            return iter(path.values)
        return self._fetcher.fetch_ranges(path.ranges, timeout_ms=self._timeout_ms, cancel=cancel)

    def materialize(
        self,
        plan: BatchPlan,
        *,
        force_remote: bool = False,
        cancel: threading.Event | None = None,
    ) -> list[Iterator[T]]:
        """Resolve every partition now; return their lazy readers in plan order."""
        readers: list[Iterator[T]] = []
        for index, block in enumerate(plan.partitions):
            path = self.resolve(block, force_remote=force_remote)
            self._event_bus.emit(
                PartitionReadEvent(
                    time=plan.time,
                    index=index,
                    block_id=block.block_id,
                    read_path="local" if isinstance(path, LocalRead) else "remote",
                    fallback=isinstance(path, RemoteRead) and path.fallback,
                )
            )
            readers.append(self.read(path, cancel=cancel))
        return readers

    def materialize_all(
        self,
        plan: BatchPlan,
        *,
        force_remote: bool = False,
        max_workers: int | None = None,
    ) -> list[list[T]]:
        """Read every partition in parallel and collect the values.

        The first failing partition cancels the in-flight reads of the others
        and its error is raised.
        """
        if not plan.partitions:
            return []

        cancel = threading.Event()
        readers = self.materialize(plan, force_remote=force_remote, cancel=cancel)

        with ThreadPoolExecutor(
            max_workers=max_workers or min(len(readers), 8),
            thread_name_prefix=f"batch-{plan.time}",
        ) as pool:
            futures = [pool.submit(list, reader) for reader in readers]
            try:
                return [future.result() for future in futures]
            except BaseException:
                cancel.set()
                for future in futures:
                    future.cancel()
                raise
