"""Connector configuration model.

This module defines the ConnectorConfig schema used to parse and normalize
ingestion-source configuration from JSON into the values consumed by the
receiver, the range fetcher, and the checkpoint store.
"""

from __future__ import annotations

import re
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr, model_validator

from kinesis_ingest.core.domain.types import InitialPosition
from kinesis_ingest.fetch.retry import RetryPolicy

_ENDPOINT_REGION = re.compile(r"kinesis[.-](?:fips[.-])?([a-z]{2}(?:-gov)?-[a-z]+-\d)\.")

StorageLevel = Literal[
    "MEMORY_ONLY",
    "MEMORY_ONLY_2",
    "MEMORY_AND_DISK",
    "MEMORY_AND_DISK_2",
]


class AwsCredentials(BaseModel):
    """Explicit access key / secret key pair."""

    access_key_id: str = Field(..., min_length=1)
    secret_access_key: SecretStr

    model_config = ConfigDict(extra="forbid", frozen=True)


class RetrySettings(BaseModel):
    """Backoff settings for source calls made by the range fetcher.

    ``timeout_ms`` defaults to the batch interval when left unset.
    """

    max_attempts: int = Field(default=4, ge=1)
    initial_wait_ms: int = Field(default=100, ge=0)
    max_wait_ms: int = Field(default=10_000, ge=0)
    timeout_ms: int | None = Field(default=None, gt=0)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def validate_waits(self) -> RetrySettings:
        if self.max_wait_ms < self.initial_wait_ms:
            raise ValueError("max_wait_ms must be >= initial_wait_ms")
        return self


class ConnectorConfig(BaseModel):
    """Structured configuration of one ingestion source.

    JSON example:
        {
          "app_name": "clickstream-app",
          "stream_name": "clickstream",
          "endpoint_url": "https://kinesis.us-east-1.amazonaws.com",
          "initial_position": "LATEST",
          "batch_interval_ms": 2000,
          "storage_level": "MEMORY_AND_DISK_2",
          "checkpoint_dir": "/var/lib/ingest/checkpoints"
        }

    ``region_name`` is derived from the endpoint when omitted.
    """

    app_name: str = Field(..., min_length=1)
    stream_name: str = Field(..., min_length=1)
    endpoint_url: str = Field(..., min_length=1)
    region_name: str | None = None

    initial_position: InitialPosition = "LATEST"
    batch_interval_ms: int = Field(..., gt=0)
    storage_level: StorageLevel = "MEMORY_AND_DISK_2"

    credentials: AwsCredentials | None = None
    retry: RetrySettings = Field(default_factory=RetrySettings)

    checkpoint_dir: str | None = None
    get_records_limit: int = Field(default=10_000, gt=0, le=10_000)
    receiver_poll_interval_ms: int = Field(default=1_000, gt=0)
    max_cached_blocks: int | None = Field(default=None, gt=0)
    fallback_on_cache_miss: bool = True

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_json_obj(cls, obj: dict[str, Any]) -> ConnectorConfig:
        """Create a ConnectorConfig instance from a JSON-compatible object."""
        return cls.model_validate(obj)

    @model_validator(mode="after")
    def resolve_region(self) -> ConnectorConfig:
        """Fill in the region from the endpoint URL when it was not given."""
        if self.region_name is None:
            self.region_name = region_from_endpoint(self.endpoint_url)
        return self

    @property
    def retry_timeout_ms(self) -> int:
        """Elapsed-time cap of one source call; the batch interval by default."""
        if self.retry.timeout_ms is not None:
            return self.retry.timeout_ms
        return self.batch_interval_ms

    def to_retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.retry.max_attempts,
            initial_wait_ms=self.retry.initial_wait_ms,
            max_wait_ms=self.retry.max_wait_ms,
            timeout_ms=self.retry_timeout_ms,
        )


def region_from_endpoint(endpoint_url: str) -> str:
    """
    Derive the AWS region from a Kinesis endpoint URL.

    Example:
        "https://kinesis.us-west-2.amazonaws.com" -> "us-west-2"

    Raises:
        ValueError:
            If the endpoint does not embed a region name.
    """
    match = _ENDPOINT_REGION.search(endpoint_url)
    if match is None:
        raise ValueError(f"Could not determine region from endpoint {endpoint_url!r}")
    return match.group(1)
