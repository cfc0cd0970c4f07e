"""
KPL record aggregation codec.

A producer may pack several logical (user) records into one physical record.
The physical payload layout is::

    MAGIC (4 bytes) | AggregatedRecord protobuf | MD5(protobuf) (16 bytes)

with::

    message AggregatedRecord {
      repeated string partition_key_table     = 1;
      repeated string explicit_hash_key_table = 2;
      repeated Record records                 = 3;
    }
    message Record {
      required uint64 partition_key_index     = 1;
      optional uint64 explicit_hash_key_index = 2;
      required bytes  data                    = 3;
      repeated Tag    tags                    = 4;
    }

Payloads without the magic prefix, or whose digest does not match, are plain
records and pass through unchanged.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Iterator, Sequence

from kinesis_ingest.core.domain.errors import CorruptAggregateRecord
from kinesis_ingest.core.domain.types import SourceRecord
from kinesis_ingest.core.ports.log_source import PhysicalRecord

KPL_MAGIC: bytes = b"\xf3\x89\x9a\xc2"
_DIGEST_SIZE: int = 16

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LENGTH_DELIMITED = 2
_WIRE_FIXED32 = 5


@dataclass(frozen=True, slots=True)
class UserRecord:
    """A logical record inside an aggregate (before source metadata is attached)."""

    partition_key: str
    data: bytes
    explicit_hash_key: str | None = None


# ---------------------------------------------------------------------------
# Protobuf wire helpers
# ---------------------------------------------------------------------------


def _read_varint(buf: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(buf):
            raise CorruptAggregateRecord("truncated varint")
        byte = buf[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result, pos
        shift += 7
        if shift > 63:
            raise CorruptAggregateRecord("varint too long")


def _write_varint(value: int) -> bytes:
    out = bytearray()
    while True:
        to_write = value & 0x7F
        value >>= 7
        if value:
            out.append(to_write | 0x80)
        else:
            out.append(to_write)
            return bytes(out)


def _iter_fields(buf: bytes) -> Iterator[tuple[int, int, int | bytes]]:
    """Yield (field_number, wire_type, value) for every field in ``buf``."""
    pos = 0
    while pos < len(buf):
        key, pos = _read_varint(buf, pos)
        field_number, wire_type = key >> 3, key & 0x07

        if wire_type == _WIRE_VARINT:
            value, pos = _read_varint(buf, pos)
            yield field_number, wire_type, value
        elif wire_type == _WIRE_LENGTH_DELIMITED:
            length, pos = _read_varint(buf, pos)
            end = pos + length
            if end > len(buf):
                raise CorruptAggregateRecord("length-delimited field overruns buffer")
            yield field_number, wire_type, buf[pos:end]
            pos = end
        elif wire_type == _WIRE_FIXED64:
            pos += 8
        elif wire_type == _WIRE_FIXED32:
            pos += 4
        else:
            raise CorruptAggregateRecord(f"unsupported wire type {wire_type}")

    if pos != len(buf):
        raise CorruptAggregateRecord("fixed-width field overruns buffer")


def _field(field_number: int, payload: bytes) -> bytes:
    return _write_varint((field_number << 3) | _WIRE_LENGTH_DELIMITED) + _write_varint(len(payload)) + payload


def _varint_field(field_number: int, value: int) -> bytes:
    return _write_varint((field_number << 3) | _WIRE_VARINT) + _write_varint(value)


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------


def is_aggregated(data: bytes) -> bool:
    """Return True if ``data`` is a well-formed aggregate (magic and digest)."""
    if len(data) <= len(KPL_MAGIC) + _DIGEST_SIZE or not data.startswith(KPL_MAGIC):
        return False
    body = data[len(KPL_MAGIC):-_DIGEST_SIZE]
    return hashlib.md5(body).digest() == data[-_DIGEST_SIZE:]


def decode_aggregate(data: bytes) -> list[UserRecord]:
    """Decode an aggregate payload into its user records, in order."""
    body = data[len(KPL_MAGIC):-_DIGEST_SIZE]

    partition_keys: list[str] = []
    hash_keys: list[str] = []
    raw_records: list[bytes] = []

    for number, _, value in _iter_fields(body):
        if number == 1 and isinstance(value, bytes):
            partition_keys.append(value.decode("utf-8"))
        elif number == 2 and isinstance(value, bytes):
            hash_keys.append(value.decode("utf-8"))
        elif number == 3 and isinstance(value, bytes):
            raw_records.append(value)

    records: list[UserRecord] = []
    for raw in raw_records:
        pk_index: int | None = None
        ehk_index: int | None = None
        payload: bytes | None = None

        for number, _, value in _iter_fields(raw):
            if number == 1 and isinstance(value, int):
                pk_index = value
            elif number == 2 and isinstance(value, int):
                ehk_index = value
            elif number == 3 and isinstance(value, bytes):
                payload = value

        if pk_index is None or payload is None:
            raise CorruptAggregateRecord("aggregated record is missing required fields")
        if pk_index >= len(partition_keys):
            raise CorruptAggregateRecord(f"partition key index {pk_index} out of range")
        if ehk_index is not None and ehk_index >= len(hash_keys):
            raise CorruptAggregateRecord(f"explicit hash key index {ehk_index} out of range")

        records.append(
            UserRecord(
                partition_key=partition_keys[pk_index],
                data=payload,
                explicit_hash_key=hash_keys[ehk_index] if ehk_index is not None else None,
            )
        )

    return records


def deaggregate(record: PhysicalRecord, shard_id: str = "") -> list[SourceRecord]:
    """Expand one physical record into its logical records.

    A plain record yields exactly one SourceRecord with sub-sequence 0.
    """
    if not is_aggregated(record.data):
        return [
            SourceRecord(
                data=record.data,
                sequence_number=record.sequence_number,
                partition_key=record.partition_key,
                shard_id=shard_id,
                approximate_arrival_timestamp=record.approximate_arrival_timestamp,
            )
        ]

    return [
        SourceRecord(
            data=user.data,
            sequence_number=record.sequence_number,
            partition_key=user.partition_key,
            shard_id=shard_id,
            sub_sequence_number=index,
            explicit_hash_key=user.explicit_hash_key,
            approximate_arrival_timestamp=record.approximate_arrival_timestamp,
        )
        for index, user in enumerate(decode_aggregate(record.data))
    ]


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def encode_aggregate(records: Sequence[UserRecord]) -> bytes:
    """Pack user records into one aggregate payload."""
    if not records:
        raise ValueError("cannot aggregate zero records")

    pk_table: dict[str, int] = {}
    ehk_table: dict[str, int] = {}
    encoded_records: list[bytes] = []

    for user in records:
        pk_index = pk_table.setdefault(user.partition_key, len(pk_table))
        inner = _varint_field(1, pk_index)
        if user.explicit_hash_key is not None:
            ehk_index = ehk_table.setdefault(user.explicit_hash_key, len(ehk_table))
            inner += _varint_field(2, ehk_index)
        inner += _field(3, user.data)
        encoded_records.append(inner)

    body = b"".join(_field(1, key.encode("utf-8")) for key in pk_table)
    body += b"".join(_field(2, key.encode("utf-8")) for key in ehk_table)
    body += b"".join(_field(3, inner) for inner in encoded_records)

    return KPL_MAGIC + body + hashlib.md5(body).digest()
