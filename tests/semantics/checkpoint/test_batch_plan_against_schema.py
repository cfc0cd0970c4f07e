"""Schema conformance tests for the persisted batch plan record.

The checkpoint record is validated both by the Pydantic read model and by
its JSON Schema. Anything the schema rejects must be rejected by Pydantic
too, and every dumped plan must satisfy the schema.
"""

# pylint: disable=missing-function-docstring,global-statement
from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest
from jsonschema import ValidationError as JsonSchemaValidationError
from jsonschema import validate as jsonschema_validate
from pydantic import ValidationError as PydanticValidationError
from referencing import Registry, Resource
from referencing.jsonschema import DRAFT202012

from kinesis_ingest.core.domain.types import BatchPlan

SCHEMA_REGISTRY = Registry()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def load_schema(name: str) -> dict:
    """
    Load JSON schema from the package's schema directory.
    """
    global SCHEMA_REGISTRY

    root = Path(__file__).parent.parent.parent.parent
    schema_path = root / "kinesis_ingest" / "core" / "schemas" / name

    with schema_path.open("r", encoding="utf-8") as f:
        schema = json.load(f)

    schema_id = schema.get("$id")
    if isinstance(schema_id, str) and schema_id:
        resource = Resource.from_contents(schema, default_specification=DRAFT202012)
        SCHEMA_REGISTRY = SCHEMA_REGISTRY.with_resource(schema_id, resource)

    return schema


def assert_pydantic_then_schema_ok(data: dict[str, Any], schema: dict[str, Any]) -> dict:
    plan = BatchPlan.from_checkpoint_obj(data)
    instance = json.loads(plan.to_checkpoint_json())
    jsonschema_validate(instance=instance, schema=schema, registry=SCHEMA_REGISTRY)
    return instance


def assert_schema_invalid_but_pydantic_rejects(data: dict[str, Any], schema: dict[str, Any]) -> None:
    with pytest.raises(JsonSchemaValidationError):
        jsonschema_validate(instance=data, schema=schema, registry=SCHEMA_REGISTRY)

    with pytest.raises(PydanticValidationError):
        BatchPlan.from_checkpoint_obj(data)


def mk_range(**overrides) -> dict[str, Any]:
    data: dict[str, Any] = {
        "stream_name": "clicks",
        "shard_id": "shardId-000000000000",
        "start_sequence_number": "49590338271490256608559692538361571095",
        "end_sequence_number": "49590338271490256608559692538361571099",
    }
    data.update(overrides)
    return data


def mk_block(**overrides) -> dict[str, Any]:
    data: dict[str, Any] = {
        "block_id": "input-0-0",
        "ranges": {"ranges": [mk_range()]},
        "is_valid": True,
    }
    data.update(overrides)
    return data


def mk_plan(**overrides) -> dict[str, Any]:
    data: dict[str, Any] = {
        "time": 1000,
        "partitions": [mk_block()],
        "format_version": 1,
    }
    data.update(overrides)
    return data


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(scope="module")
def batch_plan_schema() -> dict:
    return load_schema("batch_plan.schema.json")


# ---------------------------------------------------------------------------
# Valid records
# ---------------------------------------------------------------------------

def test_batch_plan_valid_minimal(batch_plan_schema):
    assert_pydantic_then_schema_ok(mk_plan(), batch_plan_schema)


def test_batch_plan_empty_partitions(batch_plan_schema):
    instance = assert_pydantic_then_schema_ok(mk_plan(partitions=[]), batch_plan_schema)
    assert instance["partitions"] == []


def test_batch_plan_open_range_dumps_null_end(batch_plan_schema):
    block = mk_block(ranges={"ranges": [mk_range(end_sequence_number=None)]})
    instance = assert_pydantic_then_schema_ok(mk_plan(partitions=[block]), batch_plan_schema)
    assert instance["partitions"][0]["ranges"]["ranges"][0]["end_sequence_number"] is None


def test_batch_plan_invalid_block_without_ranges(batch_plan_schema):
    block = mk_block(ranges={"ranges": []}, is_valid=False)
    assert_pydantic_then_schema_ok(mk_plan(partitions=[block]), batch_plan_schema)


def test_batch_plan_unknown_fields_accepted_by_both(batch_plan_schema):
    data = mk_plan(written_by="future")
    data["partitions"][0]["tier"] = "disk"

    jsonschema_validate(instance=data, schema=batch_plan_schema, registry=SCHEMA_REGISTRY)
    instance = assert_pydantic_then_schema_ok(data, batch_plan_schema)
    assert "written_by" not in instance


# ---------------------------------------------------------------------------
# Invalid records
# ---------------------------------------------------------------------------

def test_batch_plan_negative_time_rejected(batch_plan_schema):
    assert_schema_invalid_but_pydantic_rejects(mk_plan(time=-1), batch_plan_schema)


def test_batch_plan_missing_time_rejected(batch_plan_schema):
    data = mk_plan()
    data.pop("time")
    assert_schema_invalid_but_pydantic_rejects(data, batch_plan_schema)


def test_block_id_min_length(batch_plan_schema):
    bad = mk_plan(partitions=[mk_block(block_id="")])
    assert_schema_invalid_but_pydantic_rejects(bad, batch_plan_schema)


def test_sequence_number_must_be_decimal(batch_plan_schema):
    bad = mk_plan(partitions=[mk_block(ranges={"ranges": [mk_range(start_sequence_number="0x1f")]})])
    assert_schema_invalid_but_pydantic_rejects(bad, batch_plan_schema)


def test_range_requires_shard_id(batch_plan_schema):
    seq_range = mk_range()
    seq_range.pop("shard_id")
    bad = mk_plan(partitions=[mk_block(ranges={"ranges": [seq_range]})])
    assert_schema_invalid_but_pydantic_rejects(bad, batch_plan_schema)


def test_end_before_start_rejected_by_model():
    bad = mk_plan(partitions=[mk_block(ranges={"ranges": [mk_range(end_sequence_number="1")]})])

    with pytest.raises(PydanticValidationError):
        BatchPlan.from_checkpoint_obj(bad)
