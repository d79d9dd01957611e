"""Concrete collaborators: stream readers, topic subscribers, and write adapters."""

from .adapter import HttpAdapterSettings, HttpTargetAdapter
from .dynamo import DynamoStreamsClient, DynamoTargetAdapter
from .pubsub import PubSubTopicClient

__all__ = [
    "DynamoStreamsClient",
    "DynamoTargetAdapter",
    "HttpAdapterSettings",
    "HttpTargetAdapter",
    "PubSubTopicClient",
]
