"""Range reads against the log source.

The fetcher re-reads exactly the records a block was built from, given only
the block's recorded sequence-number ranges. It is the read path used when a
cached block is gone: after eviction, after a cache miss, and for every
partition replayed during recovery.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Callable, Generic, Iterator, TypeVar

from kinesis_ingest.core.domain.errors import (
    FetchCancelled,
    RangeUnavailable,
    ShardIteratorExpired,
)
from kinesis_ingest.core.domain.types import (
    SequenceNumberRange,
    SequenceNumberRanges,
    SourceRecord,
    raw_bytes,
    sequence_key,
)
from kinesis_ingest.core.events.events import FetchRetryEvent, RangeFetchedEvent
from kinesis_ingest.core.ports.log_source import GetRecordsResult, LogSource, ShardPosition
from kinesis_ingest.fetch.aggregation import deaggregate
from kinesis_ingest.fetch.retry import RetriesExhausted, RetryPolicy, call_with_retry

if TYPE_CHECKING:
    from kinesis_ingest.core.events.event_bus import EventBus

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_GET_RECORDS_LIMIT: int = 10_000


class RangeFetcher(Generic[T]):
    """Reads the records of a closed or open sequence-number range.

    Invariants:
    - records are yielded in sequence-number order, aggregates expanded in
      their original order
    - nothing beyond ``end_sequence_number`` is ever yielded
    - an exhausted range ends the read instead of blocking
    - retry exhaustion surfaces as RangeUnavailable, never as a short read
    """

    def __init__(
        self,
        source: LogSource,
        *,
        event_bus: EventBus,
        record_transform: Callable[[SourceRecord], T] = raw_bytes,  # type: ignore[assignment]
        retry_policy: RetryPolicy | None = None,
        get_records_limit: int = DEFAULT_GET_RECORDS_LIMIT,
    ) -> None:
        if get_records_limit <= 0:
            raise ValueError("get_records_limit must be > 0")
        self._source = source
        self._event_bus = event_bus
        self._transform = record_transform
        self._policy = retry_policy or RetryPolicy()
        self._limit = get_records_limit

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._policy

    def fetch(
        self,
        seq_range: SequenceNumberRange,
        timeout_ms: int | None = None,
        cancel: threading.Event | None = None,
    ) -> Iterator[T]:
        """Return a lazy, single-use iterator over the range's decoded records.

        Nothing is read until the iterator is first advanced. Closing the
        iterator (or setting ``cancel``) releases the shard iterator.
        """
        policy = self._policy.with_timeout(timeout_ms)
        return self._read_range(seq_range, policy, cancel)

    def fetch_ranges(
        self,
        ranges: SequenceNumberRanges,
        timeout_ms: int | None = None,
        cancel: threading.Event | None = None,
    ) -> Iterator[T]:
        """Read every range of a block, one after the other."""
        for seq_range in ranges.ranges:
            yield from self.fetch(seq_range, timeout_ms=timeout_ms, cancel=cancel)

    # ------------------------------------------------------------------

    def _read_range(
        self,
        seq_range: SequenceNumberRange,
        policy: RetryPolicy,
        cancel: threading.Event | None,
    ) -> Iterator[T]:
        end_key = (
            sequence_key(seq_range.end_sequence_number)
            if seq_range.end_sequence_number is not None
            else None
        )
        last_sequence_number: str | None = None
        num_records = 0

        iterator: str | None = self._open(
            seq_range,
            ShardPosition.at_sequence_number(seq_range.start_sequence_number),
            policy,
            cancel,
        )

        try:
            while iterator is not None:
                if cancel is not None and cancel.is_set():
                    raise FetchCancelled(
                        f"Range read cancelled: {seq_range.stream_name}/{seq_range.shard_id}"
                    )

                current = iterator
                try:
                    result: GetRecordsResult = self._call(
                        lambda: self._source.get_records(current, self._limit),
                        seq_range,
                        policy,
                        cancel,
                    )
                except ShardIteratorExpired:
                    LOGGER.info(
                        "Shard iterator expired; reopening",
                        extra={"shard_id": seq_range.shard_id, "after": last_sequence_number},
                    )
                    self._source.close_shard_iterator(current)
                    iterator = None
                    position = (
                        ShardPosition.after_sequence_number(last_sequence_number)
                        if last_sequence_number is not None
                        else ShardPosition.at_sequence_number(seq_range.start_sequence_number)
                    )
                    iterator = self._open(seq_range, position, policy, cancel)
                    continue

                # the consumed iterator is spent; track the next one so it is released
                iterator = result.next_iterator
                reached_end = False
                for physical in result.records:
                    key = sequence_key(physical.sequence_number)
                    if end_key is not None and key > end_key:
                        reached_end = True
                        break

                    for logical in deaggregate(physical, seq_range.shard_id):
                        num_records += 1
                        yield self._transform(logical)

                    last_sequence_number = physical.sequence_number
                    if end_key is not None and key == end_key:
                        reached_end = True
                        break

                if reached_end or result.is_exhausted():
                    break
        finally:
            if iterator is not None:
                self._source.close_shard_iterator(iterator)
            self._event_bus.emit(
                RangeFetchedEvent(
                    shard_id=seq_range.shard_id,
                    start_sequence_number=seq_range.start_sequence_number,
                    end_sequence_number=seq_range.end_sequence_number,
                    num_records=num_records,
                )
            )

    def _open(
        self,
        seq_range: SequenceNumberRange,
        position: ShardPosition,
        policy: RetryPolicy,
        cancel: threading.Event | None,
    ) -> str:
        return self._call(
            lambda: self._source.open_shard_iterator(
                seq_range.stream_name,
                seq_range.shard_id,
                position,
            ),
            seq_range,
            policy,
            cancel,
        )

    def _call(
        self,
        operation: Callable[[], Any],
        seq_range: SequenceNumberRange,
        policy: RetryPolicy,
        cancel: threading.Event | None,
    ) -> Any:
        def _on_retry(attempt: int, error: BaseException) -> None:
            self._event_bus.emit(
                FetchRetryEvent(shard_id=seq_range.shard_id, attempt=attempt, error=str(error))
            )

        try:
            return call_with_retry(operation, policy=policy, cancel=cancel, on_retry=_on_retry)
        except RetriesExhausted as exc:
            LOGGER.warning(
                "Range unavailable",
                extra={
                    "stream_name": seq_range.stream_name,
                    "shard_id": seq_range.shard_id,
                    "attempts": exc.attempts,
                    "elapsed_ms": exc.elapsed_ms,
                },
            )
            raise RangeUnavailable(
                seq_range,
                attempts=exc.attempts,
                elapsed_ms=exc.elapsed_ms,
                last_error=exc.last_error,
            ) from exc
