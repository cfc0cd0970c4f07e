"""In-memory log source.

A deterministic stand-in for Kinesis used by tests and local runs. It keeps
every shard as an ordered list of physical records, hands out opaque shard
iterators, and can inject throttling or iterator expiry.
"""

from __future__ import annotations

import hashlib
import itertools
import threading
import uuid
from dataclasses import dataclass, field
from typing import Iterable

from kinesis_ingest.core.domain.errors import ShardIteratorExpired, SourceThrottled
from kinesis_ingest.core.ports.log_source import GetRecordsResult, PhysicalRecord, ShardPosition
from kinesis_ingest.fetch.aggregation import UserRecord, encode_aggregate

# Kinesis sequence numbers are large decimals; start in the same magnitude.
_FIRST_SEQUENCE_NUMBER: int = 49_590_338_271_490_256_608_559_692_538_361_571_095


@dataclass(slots=True)
class _Shard:
    shard_id: str
    records: list[PhysicalRecord] = field(default_factory=list)
    closed: bool = False


@dataclass(slots=True)
class _Cursor:
    stream_name: str
    shard_id: str
    index: int


class InMemoryLogSource:
    """LogSource implementation holding every stream in process memory."""

    def __init__(self) -> None:
        self._streams: dict[str, dict[str, _Shard]] = {}
        self._cursors: dict[str, _Cursor] = {}
        self._sequence = itertools.count(_FIRST_SEQUENCE_NUMBER, 2)
        self._lock = threading.Lock()

        self._throttle_remaining = 0
        self._throttle_forever = False
        self._expire_remaining = 0
        self.get_records_calls = 0

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def create_stream(self, stream_name: str, shard_count: int = 2) -> list[str]:
        if shard_count <= 0:
            raise ValueError("shard_count must be > 0")
        with self._lock:
            if stream_name in self._streams:
                raise ValueError(f"Stream already exists: {stream_name}")
            shards = {
                f"shardId-{index:012d}": _Shard(shard_id=f"shardId-{index:012d}")
                for index in range(shard_count)
            }
            self._streams[stream_name] = shards
            return list(shards)

    def put_record(self, stream_name: str, data: bytes, partition_key: str) -> tuple[str, str]:
        """Append one physical record; return (shard_id, sequence_number)."""
        with self._lock:
            shard = self._shard_for_key(stream_name, partition_key)
            return shard.shard_id, self._append(shard, data, partition_key)

    def push_data(
        self,
        stream_name: str,
        values: Iterable[int],
        aggregate: bool = False,
    ) -> dict[str, list[tuple[int, str]]]:
        """Push integers as UTF-8 text, optionally KPL-aggregated per shard.

        Returns, per shard, the (value, sequence_number) pairs written.
        """
        with self._lock:
            grouped: dict[str, list[int]] = {}
            for value in values:
                shard = self._shard_for_key(stream_name, str(value))
                grouped.setdefault(shard.shard_id, []).append(value)

            written: dict[str, list[tuple[int, str]]] = {}
            shards = self._streams[stream_name]
            for shard_id, shard_values in grouped.items():
                shard = shards[shard_id]
                if aggregate:
                    payload = encode_aggregate(
                        [UserRecord(partition_key=str(v), data=str(v).encode("utf-8")) for v in shard_values]
                    )
                    seq = self._append(shard, payload, str(shard_values[0]))
                    written[shard_id] = [(v, seq) for v in shard_values]
                else:
                    written[shard_id] = [
                        (v, self._append(shard, str(v).encode("utf-8"), str(v)))
                        for v in shard_values
                    ]
            return written

    def close_shard(self, stream_name: str, shard_id: str) -> None:
        with self._lock:
            self._streams[stream_name][shard_id].closed = True

    # ------------------------------------------------------------------
    # Fault injection
    # ------------------------------------------------------------------

    def throttle_next(self, calls: int) -> None:
        """Reject the next ``calls`` source calls with SourceThrottled."""
        with self._lock:
            self._throttle_remaining = calls

    def throttle_forever(self, enabled: bool = True) -> None:
        with self._lock:
            self._throttle_forever = enabled

    def expire_next_iterators(self, calls: int = 1) -> None:
        """Make the next ``calls`` get_records calls fail with ShardIteratorExpired."""
        with self._lock:
            self._expire_remaining = calls

    # ------------------------------------------------------------------
    # LogSource protocol
    # ------------------------------------------------------------------

    def list_shards(self, stream_name: str) -> set[str]:
        with self._lock:
            self._maybe_throttle()
            return set(self._stream(stream_name))

    def open_shard_iterator(
        self,
        stream_name: str,
        shard_id: str,
        position: ShardPosition,
    ) -> str:
        with self._lock:
            self._maybe_throttle()
            shard = self._stream(stream_name).get(shard_id)
            if shard is None:
                raise KeyError(f"Unknown shard {shard_id} in stream {stream_name}")
            index = self._index_for(shard, position)
            token = uuid.uuid4().hex
            self._cursors[token] = _Cursor(stream_name, shard_id, index)
            return token

    def get_records(self, iterator: str, limit: int) -> GetRecordsResult:
        with self._lock:
            self.get_records_calls += 1
            self._maybe_throttle()
            cursor = self._cursors.pop(iterator, None)
            if cursor is None:
                raise ShardIteratorExpired(f"Unknown or consumed iterator {iterator}")
            if self._expire_remaining > 0:
                self._expire_remaining -= 1
                raise ShardIteratorExpired(f"Iterator {iterator} expired")

            shard = self._streams[cursor.stream_name][cursor.shard_id]
            batch = shard.records[cursor.index:cursor.index + limit]
            next_index = cursor.index + len(batch)
            behind = len(shard.records) - next_index

            if shard.closed and next_index >= len(shard.records):
                next_token = None
            else:
                next_token = uuid.uuid4().hex
                self._cursors[next_token] = _Cursor(cursor.stream_name, cursor.shard_id, next_index)

            return GetRecordsResult(
                records=list(batch),
                next_iterator=next_token,
                millis_behind_latest=behind,
            )

    def close_shard_iterator(self, iterator: str) -> None:
        with self._lock:
            self._cursors.pop(iterator, None)

    @property
    def open_iterator_count(self) -> int:
        with self._lock:
            return len(self._cursors)

    # ------------------------------------------------------------------

    def _stream(self, stream_name: str) -> dict[str, _Shard]:
        shards = self._streams.get(stream_name)
        if shards is None:
            raise KeyError(f"Unknown stream: {stream_name}")
        return shards

    def _shard_for_key(self, stream_name: str, partition_key: str) -> _Shard:
        shards = list(self._stream(stream_name).values())
        digest = int.from_bytes(hashlib.md5(partition_key.encode("utf-8")).digest(), "big")
        return shards[digest % len(shards)]

    def _append(self, shard: _Shard, data: bytes, partition_key: str) -> str:
        if shard.closed:
            raise ValueError(f"Shard {shard.shard_id} is closed")
        seq = str(next(self._sequence))
        shard.records.append(PhysicalRecord(sequence_number=seq, partition_key=partition_key, data=data))
        return seq

    @staticmethod
    def _index_for(shard: _Shard, position: ShardPosition) -> int:
        if position.position_type == "TRIM_HORIZON":
            return 0
        if position.position_type == "LATEST":
            return len(shard.records)

        target = int(position.sequence_number or "0")
        for index, record in enumerate(shard.records):
            key = int(record.sequence_number)
            if position.position_type == "AT_SEQUENCE_NUMBER" and key >= target:
                return index
            if position.position_type == "AFTER_SEQUENCE_NUMBER" and key > target:
                return index
        return len(shard.records)

    def _maybe_throttle(self) -> None:
        if self._throttle_forever:
            raise SourceThrottled("Rate exceeded for shard")
        if self._throttle_remaining > 0:
            self._throttle_remaining -= 1
            raise SourceThrottled("Rate exceeded for shard")
