"""Continuous shard ingestion.

The receiver polls every shard of the stream, turns each non-empty
get_records page of a shard into one cached block, and records the page's
(first, last) sequence numbers as the block's range. A page never splits an
aggregated record, so a block's range always re-reads exactly its records.
"""

# pylint: disable=too-many-instance-attributes,too-many-arguments
from __future__ import annotations

import itertools
import logging
import threading
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Generic, Mapping, TypeVar

from kinesis_ingest.core.domain.errors import ShardIteratorExpired
from kinesis_ingest.core.domain.types import SequenceNumberRange, SourceRecord
from kinesis_ingest.core.events.events import BlockStoredEvent
from kinesis_ingest.core.ports.log_source import ShardPosition
from kinesis_ingest.fetch.aggregation import deaggregate
from kinesis_ingest.fetch.retry import RetriesExhausted, RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from kinesis_ingest.core.events.event_bus import EventBus
    from kinesis_ingest.core.ports.block_store import BlockStore
    from kinesis_ingest.core.ports.log_source import LogSource
    from kinesis_ingest.tracking.range_tracker import ShardRangeTracker

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class _ShardCursor:
    shard_id: str
    iterator: str | None = None
    last_sequence_number: str | None = None
    retry_from: str | None = None
    closed: bool = False


class ShardReceiver(Generic[T]):
    """Polls the log source and feeds blocks into the store and the tracker.

    ``poll_once`` does one synchronous pass over all shards; ``start`` runs
    it on a daemon thread every ``poll_interval_ms`` until ``stop``.
    """

    def __init__(
        self,
        *,
        source: LogSource,
        stream_name: str,
        tracker: ShardRangeTracker,
        block_store: BlockStore,
        event_bus: EventBus,
        record_transform: Callable[[SourceRecord], T],
        initial_position: ShardPosition,
        resume_positions: Mapping[str, str] | None = None,
        retry_policy: RetryPolicy | None = None,
        get_records_limit: int = 10_000,
        poll_interval_ms: int = 1_000,
    ) -> None:
        self._source = source
        self._stream_name = stream_name
        self._tracker = tracker
        self._block_store = block_store
        self._event_bus = event_bus
        self._transform = record_transform
        self._initial_position = initial_position
        self._resume_positions = dict(resume_positions or {})
        self._policy = retry_policy or RetryPolicy()
        self._limit = get_records_limit
        self._poll_interval_s = poll_interval_ms / 1000.0

        self._run_id = uuid.uuid4().hex[:8]
        self._block_counter = itertools.count()
        self._cursors: dict[str, _ShardCursor] = {}

        self._poll_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_error: BaseException | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            name=f"receiver-{self._stream_name}",
            daemon=True,
        )
        self._thread.start()
        LOGGER.info("Receiver started", extra={"stream_name": self._stream_name, "run_id": self._run_id})

    def stop(self, timeout_s: float | None = 10.0) -> None:
        self._stop.set()
        thread = self._thread
        if thread is not None:
            thread.join(timeout_s)
            self._thread = None
        LOGGER.info("Receiver stopped", extra={"stream_name": self._stream_name})

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.poll_once()
            except Exception as exc:  # pylint: disable=broad-exception-caught
                # a failed page is left unconsumed and re-read on the next poll
                self.last_error = exc
                LOGGER.exception("Receiver poll failed", extra={"stream_name": self._stream_name})
            self._stop.wait(self._poll_interval_s)

    # ------------------------------------------------------------------
    # Polling
    # ------------------------------------------------------------------

    def poll_once(self) -> list[str]:
        """Poll every open shard once; return the ids of the blocks stored."""
        with self._poll_lock:
            self._discover_shards()
            stored: list[str] = []
            for cursor in sorted(self._cursors.values(), key=lambda c: c.shard_id):
                if cursor.closed or self._stop.is_set():
                    continue
                block_id = self._poll_shard(cursor)
                if block_id is not None:
                    stored.append(block_id)
            return stored

    def _discover_shards(self) -> None:
        shard_ids = call_with_retry(
            lambda: self._source.list_shards(self._stream_name),
            policy=self._policy,
            cancel=self._stop,
        )
        for shard_id in shard_ids:
            if shard_id not in self._cursors:
                self._cursors[shard_id] = _ShardCursor(shard_id=shard_id)

    def _position_for(self, cursor: _ShardCursor) -> ShardPosition:
        if cursor.retry_from is not None:
            return ShardPosition.at_sequence_number(cursor.retry_from)
        if cursor.last_sequence_number is not None:
            return ShardPosition.after_sequence_number(cursor.last_sequence_number)
        resume = self._resume_positions.get(cursor.shard_id)
        if resume is not None:
            return ShardPosition.after_sequence_number(resume)
        return self._initial_position

    def _poll_shard(self, cursor: _ShardCursor) -> str | None:
        if cursor.iterator is None:
            position = self._position_for(cursor)
            try:
                cursor.iterator = call_with_retry(
                    lambda: self._source.open_shard_iterator(self._stream_name, cursor.shard_id, position),
                    policy=self._policy,
                    cancel=self._stop,
                )
            except RetriesExhausted as exc:
                LOGGER.warning(
                    "Opening shard iterator gave up; will retry next round",
                    extra={"shard_id": cursor.shard_id, "attempts": exc.attempts},
                )
                return None

        iterator = cursor.iterator
        try:
            result = call_with_retry(
                lambda: self._source.get_records(iterator, self._limit),
                policy=self._policy,
                cancel=self._stop,
            )
        except ShardIteratorExpired:
            cursor.iterator = None
            return None
        except RetriesExhausted as exc:
            LOGGER.warning(
                "Shard poll gave up; will retry next round",
                extra={"shard_id": cursor.shard_id, "attempts": exc.attempts},
            )
            return None

        if not result.records:
            self._advance(cursor, result.next_iterator)
            return None

        first = result.records[0].sequence_number
        last = result.records[-1].sequence_number
        block_id = f"input-{self._run_id}-{next(self._block_counter)}"

        try:
            values: list[T] = []
            for physical in result.records:
                for logical in deaggregate(physical, cursor.shard_id):
                    values.append(self._transform(logical))

            self._block_store.put_block(block_id, values)
            self._tracker.register_block(
                block_id,
                [
                    SequenceNumberRange(
                        stream_name=self._stream_name,
                        shard_id=cursor.shard_id,
                        start_sequence_number=first,
                        end_sequence_number=last,
                    )
                ],
            )
        except Exception:
            # the page stays unconsumed: the next poll re-reads it from its first record
            self._block_store.remove_block(block_id)
            if result.next_iterator is not None:
                self._source.close_shard_iterator(result.next_iterator)
            cursor.iterator = None
            cursor.retry_from = first
            raise

        cursor.last_sequence_number = last
        cursor.retry_from = None
        self._advance(cursor, result.next_iterator)

        self._event_bus.emit(
            BlockStoredEvent(block_id=block_id, shard_id=cursor.shard_id, num_records=len(values))
        )
        return block_id

    @staticmethod
    def _advance(cursor: _ShardCursor, next_iterator: str | None) -> None:
        cursor.iterator = next_iterator
        if next_iterator is None:
            cursor.closed = True
            LOGGER.info("Shard closed", extra={"shard_id": cursor.shard_id})
