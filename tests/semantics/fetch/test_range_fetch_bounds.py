"""
Semantic test: range fetch reads exactly the recorded range.

Invariant:
fetch(range) yields transform(record) for every record whose sequence
number lies in [start, end], in sequence order, and nothing else. An open
range reads up to the current tip and then ends instead of blocking.
Shard iterators are always released.
"""

from __future__ import annotations

import threading

import pytest

from kinesis_ingest.core.domain.errors import FetchCancelled
from kinesis_ingest.core.domain.types import SequenceNumberRange, SequenceNumberRanges
from kinesis_ingest.core.events.sinks.null_event_bus import NullEventBus
from kinesis_ingest.fetch.range_fetcher import RangeFetcher
from kinesis_ingest.source.memory_source import InMemoryLogSource

STREAM = "numbers"
SHARD = "shardId-000000000000"


def setup_single_shard(values: list[int], aggregate: bool = False) -> tuple[InMemoryLogSource, list[str]]:
    source = InMemoryLogSource()
    source.create_stream(STREAM, shard_count=1)
    written = source.push_data(STREAM, values, aggregate=aggregate)
    return source, [seq for _, seq in written[SHARD]]


def mk_range(start: str, end: str | None) -> SequenceNumberRange:
    return SequenceNumberRange(
        stream_name=STREAM,
        shard_id=SHARD,
        start_sequence_number=start,
        end_sequence_number=end,
    )


def as_int(record) -> int:
    return int(record.data)


def test_closed_range_reads_exactly_its_records() -> None:
    source, seqs = setup_single_shard(list(range(1, 11)))
    fetcher = RangeFetcher(source, event_bus=NullEventBus(), record_transform=as_int)

    assert list(fetcher.fetch(mk_range(seqs[2], seqs[5]))) == [3, 4, 5, 6]
    assert source.open_iterator_count == 0


def test_transform_is_applied_to_every_record() -> None:
    source, seqs = setup_single_shard(list(range(1, 11)))
    fetcher = RangeFetcher(
        source,
        event_bus=NullEventBus(),
        record_transform=lambda record: int(record.data) + 5,
    )

    assert list(fetcher.fetch(mk_range(seqs[0], seqs[-1]))) == list(range(6, 16))


def test_single_record_range() -> None:
    source, seqs = setup_single_shard([1, 2, 3])
    fetcher = RangeFetcher(source, event_bus=NullEventBus(), record_transform=as_int)

    assert list(fetcher.fetch(mk_range(seqs[1], seqs[1]))) == [2]


def test_open_range_reads_to_tip_and_ends() -> None:
    source, seqs = setup_single_shard(list(range(1, 11)))
    fetcher = RangeFetcher(source, event_bus=NullEventBus(), record_transform=as_int, get_records_limit=3)

    assert list(fetcher.fetch(mk_range(seqs[7], None))) == [8, 9, 10]
    assert source.open_iterator_count == 0


def test_small_pages_do_not_change_the_result() -> None:
    source, seqs = setup_single_shard(list(range(1, 11)))
    fetcher = RangeFetcher(source, event_bus=NullEventBus(), record_transform=as_int, get_records_limit=1)

    assert list(fetcher.fetch(mk_range(seqs[1], seqs[8]))) == list(range(2, 10))


def test_aggregate_inside_range_is_fully_expanded() -> None:
    source, seqs = setup_single_shard(list(range(1, 11)), aggregate=True)
    fetcher = RangeFetcher(source, event_bus=NullEventBus(), record_transform=as_int)

    # All ten values share the sequence number of their aggregate
    assert len(set(seqs)) == 1
    assert list(fetcher.fetch(mk_range(seqs[0], seqs[0]))) == list(range(1, 11))


def test_block_ranges_are_read_in_order() -> None:
    source, seqs = setup_single_shard(list(range(1, 11)))
    fetcher = RangeFetcher(source, event_bus=NullEventBus(), record_transform=as_int)

    ranges = SequenceNumberRanges.of(mk_range(seqs[6], seqs[7]), mk_range(seqs[0], seqs[1]))

    assert list(fetcher.fetch_ranges(ranges)) == [7, 8, 1, 2]


def test_expired_iterator_resumes_after_last_record() -> None:
    source, seqs = setup_single_shard(list(range(1, 11)))
    fetcher = RangeFetcher(source, event_bus=NullEventBus(), record_transform=as_int, get_records_limit=2)

    reader = fetcher.fetch(mk_range(seqs[2], seqs[5]))
    head = [next(reader), next(reader)]

    # Next page request hits an expired iterator
    source.expire_next_iterators(1)
    tail = list(reader)

    assert head + tail == [3, 4, 5, 6]
    assert source.open_iterator_count == 0


def test_fetch_is_lazy() -> None:
    source, seqs = setup_single_shard([1, 2, 3])
    fetcher = RangeFetcher(source, event_bus=NullEventBus(), record_transform=as_int)

    reader = fetcher.fetch(mk_range(seqs[0], seqs[2]))

    assert source.get_records_calls == 0
    assert next(reader) == 1
    assert source.get_records_calls == 1


def test_cancel_stops_read_and_releases_iterator() -> None:
    source, seqs = setup_single_shard(list(range(1, 11)))
    fetcher = RangeFetcher(source, event_bus=NullEventBus(), record_transform=as_int, get_records_limit=1)
    cancel = threading.Event()

    reader = fetcher.fetch(mk_range(seqs[0], seqs[-1]), cancel=cancel)
    assert next(reader) == 1

    cancel.set()
    with pytest.raises(FetchCancelled):
        next(reader)

    assert source.open_iterator_count == 0


def test_closing_reader_early_releases_iterator() -> None:
    source, seqs = setup_single_shard(list(range(1, 11)))
    fetcher = RangeFetcher(source, event_bus=NullEventBus(), record_transform=as_int, get_records_limit=2)

    reader = fetcher.fetch(mk_range(seqs[0], seqs[-1]))
    next(reader)
    reader.close()

    assert source.open_iterator_count == 0
