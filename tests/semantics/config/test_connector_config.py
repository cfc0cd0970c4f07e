"""
Semantic test: connector configuration.

Invariant:
The region is taken from the endpoint unless given explicitly, the retry
timeout defaults to the batch interval, and unknown or out-of-range
settings are rejected when the configuration is parsed.
"""

from __future__ import annotations

from typing import Any

import pytest
from pydantic import ValidationError

from kinesis_ingest.config.connector_config import ConnectorConfig, region_from_endpoint


def mk_config(**overrides) -> dict[str, Any]:
    data: dict[str, Any] = {
        "app_name": "clickstream-app",
        "stream_name": "clickstream",
        "endpoint_url": "https://kinesis.us-east-1.amazonaws.com",
        "initial_position": "LATEST",
        "batch_interval_ms": 2000,
    }
    data.update(overrides)
    return data


@pytest.mark.parametrize(
    ("endpoint", "region"),
    [
        ("https://kinesis.us-east-1.amazonaws.com", "us-east-1"),
        ("https://kinesis.eu-central-1.amazonaws.com", "eu-central-1"),
        ("https://kinesis-fips.us-gov-west-1.amazonaws.com", "us-gov-west-1"),
        ("kinesis.ap-southeast-2.amazonaws.com", "ap-southeast-2"),
    ],
)
def test_region_from_endpoint(endpoint: str, region: str) -> None:
    assert region_from_endpoint(endpoint) == region


def test_region_is_derived_when_omitted() -> None:
    cfg = ConnectorConfig.from_json_obj(mk_config())

    assert cfg.region_name == "us-east-1"


def test_explicit_region_wins() -> None:
    cfg = ConnectorConfig.from_json_obj(
        mk_config(endpoint_url="http://localhost:4566", region_name="eu-west-1")
    )

    assert cfg.region_name == "eu-west-1"


def test_endpoint_without_region_requires_region_name() -> None:
    with pytest.raises(ValidationError):
        ConnectorConfig.from_json_obj(mk_config(endpoint_url="http://localhost:4566"))


def test_retry_timeout_defaults_to_batch_interval() -> None:
    cfg = ConnectorConfig.from_json_obj(mk_config())

    assert cfg.retry_timeout_ms == 2000
    assert cfg.to_retry_policy().timeout_ms == 2000


def test_explicit_retry_settings_are_used() -> None:
    cfg = ConnectorConfig.from_json_obj(
        mk_config(retry={"max_attempts": 7, "initial_wait_ms": 50, "max_wait_ms": 500, "timeout_ms": 900})
    )

    policy = cfg.to_retry_policy()
    assert (policy.max_attempts, policy.initial_wait_ms, policy.max_wait_ms, policy.timeout_ms) == (7, 50, 500, 900)


def test_defaults() -> None:
    cfg = ConnectorConfig.from_json_obj(mk_config())

    assert cfg.storage_level == "MEMORY_AND_DISK_2"
    assert cfg.credentials is None
    assert cfg.checkpoint_dir is None
    assert cfg.fallback_on_cache_miss is True


def test_credentials_are_not_leaked_in_repr() -> None:
    cfg = ConnectorConfig.from_json_obj(
        mk_config(credentials={"access_key_id": "AKIAEXAMPLE", "secret_access_key": "s3cr3t"})
    )

    assert cfg.credentials is not None
    assert cfg.credentials.secret_access_key.get_secret_value() == "s3cr3t"
    assert "s3cr3t" not in repr(cfg)


@pytest.mark.parametrize(
    "overrides",
    [
        {"unexpected": 1},
        {"initial_position": "AT_TIMESTAMP"},
        {"batch_interval_ms": 0},
        {"storage_level": "DISK_ONLY"},
        {"get_records_limit": 10_001},
        {"stream_name": ""},
        {"retry": {"initial_wait_ms": 500, "max_wait_ms": 100}},
        {"retry": {"max_attempts": 0}},
    ],
)
def test_invalid_settings_are_rejected(overrides: dict[str, Any]) -> None:
    with pytest.raises(ValidationError):
        ConnectorConfig.from_json_obj(mk_config(**overrides))
