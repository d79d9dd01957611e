"""HTTP client for the write API of the adapter fronting the target store."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

import httpx

from ..errors import TargetAdapterError
from ..streams.records import AttributeMap

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HttpAdapterSettings:
    """Settings that control the adapter client behaviour."""

    base_url: str
    api_prefix: str = "/v1"
    request_timeout_seconds: float = 10.0

    def resolve_endpoint(self, operation: str) -> str:
        """Return the absolute URL of an adapter operation such as ``PutItem``."""
        base = self.base_url.rstrip("/")
        prefix = self.api_prefix.strip().rstrip("/")
        if prefix and not prefix.startswith("/"):
            prefix = f"/{prefix}"
        return f"{base}{prefix}/{operation}"


class HttpTargetAdapter:
    """Posts DynamoDB-shaped write requests to the adapter's HTTP surface.

    The underlying :class:`httpx.Client` is thread-safe, so one instance can be
    shared by every dispatcher in the process.
    """

    def __init__(
        self,
        settings: HttpAdapterSettings,
        *,
        http_client: Optional[httpx.Client] = None,
    ) -> None:
        if not settings.base_url:
            raise ValueError("base_url must be provided")
        self._settings = settings
        self._client = http_client or httpx.Client(
            timeout=settings.request_timeout_seconds,
            headers={
                "Content-Type": "application/json",
                "Accept": "application/json",
            },
        )

    def put(self, table_name: str, item: AttributeMap) -> None:
        self._post("PutItem", {"TableName": table_name, "Item": item})

    def update(
        self,
        table_name: str,
        key: AttributeMap,
        attribute_updates: Mapping[str, Dict[str, Any]],
    ) -> None:
        self._post(
            "UpdateItem",
            {
                "TableName": table_name,
                "Key": key,
                "AttributeUpdates": dict(attribute_updates),
            },
        )

    def delete(self, table_name: str, key: AttributeMap) -> None:
        self._post("DeleteItem", {"TableName": table_name, "Key": key})

    def close(self) -> None:
        self._client.close()

    def _post(self, operation: str, payload: Dict[str, Any]) -> None:
        url = self._settings.resolve_endpoint(operation)
        logger.debug("adapter: %s request to %s", operation, url)
        try:
            response = self._client.post(url, json=payload)
        except httpx.RequestError as exc:
            raise TargetAdapterError(f"{operation} request to {url} failed: {exc}") from exc
        if response.status_code != httpx.codes.OK:
            raise TargetAdapterError(
                f"error occurred while calling {operation} on table "
                f"{payload.get('TableName')}, code={response.status_code}, "
                f"body={response.text}",
                status_code=response.status_code,
            )

    def __enter__(self) -> "HttpTargetAdapter":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


__all__ = ["HttpAdapterSettings", "HttpTargetAdapter"]
