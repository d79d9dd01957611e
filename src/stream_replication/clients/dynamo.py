"""boto3-backed DynamoDB Streams reader and DynamoDB write adapter."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from ..errors import TargetAdapterError
from ..streams.records import (
    AttributeMap,
    IteratorType,
    RecordsPage,
    Shard,
    TopologyPage,
)

logger = logging.getLogger(__name__)


def _client_config() -> Config:
    return Config(max_pool_connections=50)


class DynamoStreamsClient:
    """Source stream client over the ``dynamodbstreams`` API for one stream ARN."""

    def __init__(
        self,
        stream_arn: str,
        *,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client: Any = None,
        records_limit: Optional[int] = None,
    ) -> None:
        if not stream_arn:
            raise ValueError("stream_arn must be provided")
        self.stream_arn = stream_arn
        self._records_limit = records_limit
        self._client = client or boto3.client(
            "dynamodbstreams",
            region_name=region_name,
            endpoint_url=endpoint_url or None,
            config=_client_config(),
        )

    def describe_topology(
        self, exclusive_start_shard_id: Optional[str] = None
    ) -> TopologyPage:
        params: Dict[str, Any] = {"StreamArn": self.stream_arn}
        if exclusive_start_shard_id is not None:
            params["ExclusiveStartShardId"] = exclusive_start_shard_id
        response = self._client.describe_stream(**params)
        description = response.get("StreamDescription", {})
        shards = [
            Shard(
                shard_id=entry["ShardId"],
                parent_shard_id=entry.get("ParentShardId"),
            )
            for entry in description.get("Shards", [])
        ]
        return TopologyPage(
            shards=shards,
            last_evaluated_shard_id=description.get("LastEvaluatedShardId"),
        )

    def get_iterator(
        self,
        shard_id: str,
        iterator_type: IteratorType,
        sequence_number: Optional[str] = None,
    ) -> Optional[str]:
        params: Dict[str, Any] = {
            "StreamArn": self.stream_arn,
            "ShardId": shard_id,
            "ShardIteratorType": iterator_type.value,
        }
        if iterator_type is IteratorType.AFTER_SEQUENCE_NUMBER:
            if not sequence_number:
                raise ValueError("AFTER_SEQUENCE_NUMBER requires a sequence number")
            params["SequenceNumber"] = sequence_number
        response = self._client.get_shard_iterator(**params)
        return response.get("ShardIterator")

    def get_records(self, iterator: str) -> RecordsPage:
        params: Dict[str, Any] = {"ShardIterator": iterator}
        if self._records_limit:
            params["Limit"] = self._records_limit
        response = self._client.get_records(**params)
        return RecordsPage(
            records=response.get("Records", []),
            next_iterator=response.get("NextShardIterator"),
        )


class DynamoTargetAdapter:
    """Write adapter applying replayed changes to DynamoDB tables."""

    def __init__(
        self,
        *,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
        client: Any = None,
    ) -> None:
        self._client = client or boto3.client(
            "dynamodb",
            region_name=region_name,
            endpoint_url=endpoint_url or None,
            config=_client_config(),
        )

    def put(self, table_name: str, item: AttributeMap) -> None:
        self._call("put_item", table_name, TableName=table_name, Item=item)

    def update(
        self,
        table_name: str,
        key: AttributeMap,
        attribute_updates: Mapping[str, Dict[str, Any]],
    ) -> None:
        self._call(
            "update_item",
            table_name,
            TableName=table_name,
            Key=key,
            AttributeUpdates=dict(attribute_updates),
        )

    def delete(self, table_name: str, key: AttributeMap) -> None:
        self._call("delete_item", table_name, TableName=table_name, Key=key)

    def _call(self, operation: str, table_name: str, **params: Any) -> None:
        try:
            getattr(self._client, operation)(**params)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
            raise TargetAdapterError(
                f"{operation} on table {table_name} rejected: "
                f"{error.get('Code')} {error.get('Message')}",
                status_code=status,
            ) from exc
        except BotoCoreError as exc:
            raise TargetAdapterError(
                f"{operation} on table {table_name} failed: {exc}"
            ) from exc


__all__ = ["DynamoStreamsClient", "DynamoTargetAdapter"]
