"""Public API for the kinesis_ingest package.

Only symbols imported here are considered part of the stable,
supported external interface.
"""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError, version

# ----------------------------------------------------------------------
# Ingestion Source API
# ----------------------------------------------------------------------
from kinesis_ingest.streaming.input_source import (
    KinesisInputSource,
    create_ingestion_source,
)
from kinesis_ingest.streaming.materialize import LocalRead, ReadPath, RemoteRead

# ----------------------------------------------------------------------
# Config API (used by consumers)
# ----------------------------------------------------------------------
from kinesis_ingest.config.connector_config import (
    AwsCredentials,
    ConnectorConfig,
    RetrySettings,
)

# ----------------------------------------------------------------------
# Domain Types
# ----------------------------------------------------------------------
from kinesis_ingest.core.domain.types import (
    BatchPlan,
    CachedBlock,
    InitialPosition,
    RecordTransform,
    SequenceNumberRange,
    SequenceNumberRanges,
    SourceRecord,
    raw_bytes,
)
from kinesis_ingest.core.domain.errors import (
    BlockCacheMiss,
    CheckpointConflict,
    CheckpointCorrupt,
    ConnectorError,
    FetchCancelled,
    InvalidBlockNoRange,
    RangeUnavailable,
    RecoveryFailed,
)

# ----------------------------------------------------------------------
# Log Sources
# ----------------------------------------------------------------------
from kinesis_ingest.core.ports.log_source import LogSource, ShardPosition
from kinesis_ingest.source.memory_source import InMemoryLogSource

# ----------------------------------------------------------------------
# Public API definition
# ----------------------------------------------------------------------

__all__ = [
    # Ingestion source
    "KinesisInputSource",
    "create_ingestion_source",
    "LocalRead",
    "RemoteRead",
    "ReadPath",

    # Config
    "ConnectorConfig",
    "AwsCredentials",
    "RetrySettings",

    # Domain API
    "SequenceNumberRange",
    "SequenceNumberRanges",
    "CachedBlock",
    "BatchPlan",
    "SourceRecord",
    "RecordTransform",
    "InitialPosition",
    "raw_bytes",

    # Errors
    "ConnectorError",
    "RangeUnavailable",
    "FetchCancelled",
    "InvalidBlockNoRange",
    "BlockCacheMiss",
    "CheckpointCorrupt",
    "CheckpointConflict",
    "RecoveryFailed",

    # Sources
    "LogSource",
    "ShardPosition",
    "InMemoryLogSource",

    # Version
    "__version__",
]

# ----------------------------------------------------------------------
# Package version
# ----------------------------------------------------------------------

try:
    __version__ = version("kinesis-ingest")
except PackageNotFoundError:
    __version__ = "0.0.0"
