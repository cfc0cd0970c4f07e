from __future__ import annotations

import json
import logging
import os
from typing import Any

from prometheus_client import CollectorRegistry, Counter, Gauge, push_to_gateway

from kinesis_ingest.core.events.events import (
    BatchPlannedEvent,
    BatchRecoveredEvent,
    BlockInvalidatedEvent,
    BlockStoredEvent,
    CheckpointPersistedEvent,
    FetchRetryEvent,
    PartitionReadEvent,
    RangeFetchedEvent,
)

LOGGER = logging.getLogger(__name__)


class ConnectorMetrics:
    """Prometheus counters fed from connector events.

    Register an instance as an event sink; every event updates the counters
    on a private CollectorRegistry.

    Expected environment for pushing (optional):
    - PROMETHEUS_PUSHGATEWAY_URL: URL to the Pushgateway.
      Example: http://pushgateway.monitoring.svc.cluster.local:9091
    - PROMETHEUS_PUSHGATEWAY_GROUPING_KEY_JSON: JSON object used as grouping key.
      If not set, metrics are grouped only by the 'job' argument, which often
      causes pushes from different pods to overwrite each other.

    Pushing is best-effort: a failed push is logged and never fails ingestion.
    """

    def __init__(self, *, stream_name: str, registry: CollectorRegistry | None = None) -> None:
        self._pushgateway_url = os.environ.get("PROMETHEUS_PUSHGATEWAY_URL")
        self._grouping_key = self._load_grouping_key()
        self.registry = registry or CollectorRegistry()
        self._stream_name = stream_name

        labels = ["stream_name"]
        self.blocks_stored = Counter(
            "kinesis_ingest_blocks_stored",
            "Blocks written to the local block store",
            labels,
            registry=self.registry,
        )
        self.records_received = Counter(
            "kinesis_ingest_records_received",
            "Logical records received into blocks",
            labels,
            registry=self.registry,
        )
        self.blocks_invalidated = Counter(
            "kinesis_ingest_blocks_invalidated",
            "Blocks whose cache copy became unusable",
            labels,
            registry=self.registry,
        )
        self.batches_planned = Counter(
            "kinesis_ingest_batches_planned",
            "Batch plans produced",
            labels,
            registry=self.registry,
        )
        self.checkpoints_persisted = Counter(
            "kinesis_ingest_checkpoints_persisted",
            "Batch plans durably checkpointed",
            labels,
            registry=self.registry,
        )
        self.partition_reads = Counter(
            "kinesis_ingest_partition_reads",
            "Partitions materialized, by read path",
            labels + ["read_path", "fallback"],
            registry=self.registry,
        )
        self.records_fetched = Counter(
            "kinesis_ingest_records_fetched",
            "Logical records re-read from the source by range",
            labels,
            registry=self.registry,
        )
        self.fetch_retries = Counter(
            "kinesis_ingest_fetch_retries",
            "Retried source calls during range reads",
            labels,
            registry=self.registry,
        )
        self.batches_recovered = Counter(
            "kinesis_ingest_batches_recovered",
            "Persisted batches recomputed during recovery",
            labels,
            registry=self.registry,
        )
        self.last_batch_partitions = Gauge(
            "kinesis_ingest_last_batch_partitions",
            "Partition count of the most recently planned batch",
            labels,
            registry=self.registry,
        )

    def on_event(self, event: Any) -> None:
        stream = self._stream_name

        if isinstance(event, BlockStoredEvent):
            self.blocks_stored.labels(stream).inc()
            self.records_received.labels(stream).inc(event.num_records)
        elif isinstance(event, BlockInvalidatedEvent):
            self.blocks_invalidated.labels(stream).inc()
        elif isinstance(event, BatchPlannedEvent):
            self.batches_planned.labels(stream).inc()
            self.last_batch_partitions.labels(stream).set(event.num_partitions)
        elif isinstance(event, CheckpointPersistedEvent):
            self.checkpoints_persisted.labels(stream).inc()
        elif isinstance(event, PartitionReadEvent):
            self.partition_reads.labels(stream, event.read_path, str(event.fallback).lower()).inc()
        elif isinstance(event, RangeFetchedEvent):
            self.records_fetched.labels(stream).inc(event.num_records)
        elif isinstance(event, FetchRetryEvent):
            self.fetch_retries.labels(stream).inc()
        elif isinstance(event, BatchRecoveredEvent):
            self.batches_recovered.labels(stream).inc()

    def is_push_enabled(self) -> bool:
        return self._pushgateway_url is not None

    @staticmethod
    def _load_grouping_key() -> dict[str, str]:
        raw = os.environ.get("PROMETHEUS_PUSHGATEWAY_GROUPING_KEY_JSON")
        if not raw:
            return {}

        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            LOGGER.warning(
                "Invalid PROMETHEUS_PUSHGATEWAY_GROUPING_KEY_JSON; ignoring"
            )
            return {}

        if not isinstance(data, dict):
            return {}

        grouping: dict[str, str] = {}
        for key, value in data.items():
            if isinstance(key, str) and isinstance(value, str):
                grouping[key] = value
        return grouping

    def push_all(self, *, job: str) -> None:
        if not self._pushgateway_url:
            return

        try:
            push_to_gateway(
                gateway=self._pushgateway_url,
                job=job,
                registry=self.registry,
                grouping_key=self._grouping_key,
            )
        except OSError as exc:
            LOGGER.warning("Prometheus push failed", extra={"job": job, "error": str(exc)})
            return

        LOGGER.info(
            "Prometheus metrics pushed",
            extra={"job": job, "grouping_key": self._grouping_key},
        )
