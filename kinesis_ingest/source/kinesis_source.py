from __future__ import annotations

import logging
from typing import Any

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from kinesis_ingest.config.connector_config import AwsCredentials, region_from_endpoint
from kinesis_ingest.core.domain.errors import (
    ShardIteratorExpired,
    SourceThrottled,
    SourceTransientError,
)
from kinesis_ingest.core.ports.log_source import GetRecordsResult, PhysicalRecord, ShardPosition

LOGGER = logging.getLogger(__name__)

_THROTTLING_CODES: frozenset[str] = frozenset(
    {
        "ProvisionedThroughputExceededException",
        "ThrottlingException",
        "LimitExceededException",
        "KMSThrottlingException",
    }
)

_TRANSIENT_CODES: frozenset[str] = frozenset(
    {
        "InternalFailure",
        "InternalFailureException",
        "ServiceUnavailable",
        "ServiceUnavailableException",
        "KMSInternalException",
    }
)


class KinesisLogSource:
    """
    LogSource implementation on top of the boto3 Kinesis client.

    Authentication:
      - explicit credentials: an access key / secret key pair
      - None: boto3's default credential chain (environment, shared config,
        instance / container role)

    Error mapping (botocore -> connector taxonomy):
      - throughput / throttling codes   -> SourceThrottled
      - ExpiredIteratorException        -> ShardIteratorExpired
      - 5xx / internal failures / network errors -> SourceTransientError
      - anything else propagates unchanged
    """

    def __init__(
        self,
        *,
        endpoint_url: str,
        region_name: str | None = None,
        credentials: AwsCredentials | None = None,
        connect_timeout_s: float = 10.0,
        read_timeout_s: float = 30.0,
        client: Any | None = None,
    ) -> None:
        if client is not None:
            self._client = client
            return

        session_kwargs: dict[str, Any] = {}
        if credentials is not None:
            session_kwargs["aws_access_key_id"] = credentials.access_key_id
            session_kwargs["aws_secret_access_key"] = credentials.secret_access_key.get_secret_value()

        session = boto3.session.Session(**session_kwargs)

        self._client = session.client(
            "kinesis",
            endpoint_url=endpoint_url,
            region_name=region_name or region_from_endpoint(endpoint_url),
            # retries are owned by the range fetcher; keep botocore's own out of the way
            config=Config(
                connect_timeout=connect_timeout_s,
                read_timeout=read_timeout_s,
                retries={"max_attempts": 1, "mode": "standard"},
            ),
        )

    # ------------------------------------------------------------------

    def list_shards(self, stream_name: str) -> set[str]:
        shard_ids: set[str] = set()
        kwargs: dict[str, Any] = {"StreamName": stream_name}

        while True:
            resp = self._invoke(self._client.list_shards, **kwargs)
            for shard in resp.get("Shards", []):
                shard_ids.add(shard["ShardId"])

            next_token = resp.get("NextToken")
            if not next_token:
                return shard_ids
            # NextToken and StreamName are mutually exclusive
            kwargs = {"NextToken": next_token}

    def open_shard_iterator(
        self,
        stream_name: str,
        shard_id: str,
        position: ShardPosition,
    ) -> str:
        kwargs: dict[str, Any] = {
            "StreamName": stream_name,
            "ShardId": shard_id,
            "ShardIteratorType": position.position_type,
        }
        if position.sequence_number is not None:
            kwargs["StartingSequenceNumber"] = position.sequence_number

        resp = self._invoke(self._client.get_shard_iterator, **kwargs)
        return str(resp["ShardIterator"])

    def get_records(self, iterator: str, limit: int) -> GetRecordsResult:
        resp = self._invoke(self._client.get_records, ShardIterator=iterator, Limit=limit)

        records: list[PhysicalRecord] = []
        for rec in resp.get("Records", []):
            arrival = rec.get("ApproximateArrivalTimestamp")
            records.append(
                PhysicalRecord(
                    sequence_number=rec["SequenceNumber"],
                    partition_key=rec["PartitionKey"],
                    data=bytes(rec["Data"]),
                    approximate_arrival_timestamp=arrival.timestamp() if arrival is not None else None,
                )
            )

        return GetRecordsResult(
            records=records,
            next_iterator=resp.get("NextShardIterator"),
            millis_behind_latest=resp.get("MillisBehindLatest"),
        )

    def close_shard_iterator(self, iterator: str) -> None:
        # Kinesis iterators hold no server-side resources.
        return

    # ------------------------------------------------------------------

    @staticmethod
    def _invoke(fn: Any, **kwargs: Any) -> dict[str, Any]:
        try:
            return fn(**kwargs)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            code = error.get("Code", "")
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)

            if code in _THROTTLING_CODES:
                raise SourceThrottled(str(exc)) from exc
            if code == "ExpiredIteratorException":
                raise ShardIteratorExpired(str(exc)) from exc
            if code in _TRANSIENT_CODES or status >= 500:
                raise SourceTransientError(str(exc)) from exc
            raise
        except BotoCoreError as exc:
            LOGGER.warning("Kinesis call failed at transport level", extra={"error": str(exc)})
            raise SourceTransientError(str(exc)) from exc
