"""Google Cloud Pub/Sub subscriber used by the push replication path."""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Optional

from google.api_core.exceptions import NotFound
from google.cloud import pubsub_v1
from google.cloud.pubsub_v1.subscriber.scheduler import ThreadScheduler

from ..errors import ReplicationError

logger = logging.getLogger(__name__)


class PubSubTopicClient:
    """Push topic client for one project.

    Messages are delivered through a single-worker scheduler with flow control
    capped at ``max_outstanding``, so callbacks never overlap.
    """

    def __init__(
        self,
        project: str,
        *,
        subscriber: Optional[pubsub_v1.SubscriberClient] = None,
    ) -> None:
        if not project:
            raise ValueError("project must be provided")
        self.project = project
        self._subscriber = subscriber or pubsub_v1.SubscriberClient()

    def subscribe(
        self,
        subscription_id: str,
        callback: Callable[[Any], None],
        *,
        max_outstanding: int = 1,
    ):
        path = self._subscriber.subscription_path(self.project, subscription_id)
        try:
            self._subscriber.get_subscription(request={"subscription": path})
        except NotFound as exc:
            raise ReplicationError(f"subscription {path} does not exist") from exc
        flow_control = pubsub_v1.types.FlowControl(max_messages=max_outstanding)
        scheduler = ThreadScheduler(
            executor=ThreadPoolExecutor(
                max_workers=1, thread_name_prefix=f"pubsub-{subscription_id}"
            )
        )
        logger.debug(
            "pubsub: subscribing to %s with max_outstanding=%d", path, max_outstanding
        )
        return self._subscriber.subscribe(
            path,
            callback=callback,
            flow_control=flow_control,
            scheduler=scheduler,
        )

    def close(self) -> None:
        self._subscriber.close()


__all__ = ["PubSubTopicClient"]
