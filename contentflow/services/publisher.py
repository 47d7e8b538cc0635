from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
import logging
from typing import Any, Protocol

import httpx

from contentflow.core.config import get_settings
from contentflow.core.errors import PublishError
from contentflow.domain.models import PublicationQueueEntry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublishResult:
    # Destination acknowledgement recorded on the queue entry.
    status_code: int | None
    external_id: str | None = None


class Publisher(Protocol):
    async def publish(self, entry: PublicationQueueEntry) -> PublishResult:
        ...


def build_publish_signature(secret: str, payload: bytes) -> str:
    # HMAC SHA256 over the exact request body bytes.
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def build_publish_payload(entry: PublicationQueueEntry) -> dict[str, Any]:
    return {
        "entry_id": entry.id,
        "content_type": entry.content_type,
        "content_id": entry.content_id,
        "destination_id": entry.destination_id,
        "priority": entry.priority,
        "attempt": int(entry.attempts or 0) + 1,
        "metadata": entry.metadata_json or {},
    }


class WebhookPublisher:
    """Publish queue entries by POSTing a signed JSON payload to a destination webhook."""

    def __init__(
        self,
        *,
        url_template: str | None = None,
        secret: str | None = None,
        timeout_ms: int | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        settings = get_settings()
        self._url_template = url_template or settings.publish_webhook_url
        self._secret = secret if secret is not None else settings.publish_webhook_secret
        self._timeout = (timeout_ms or settings.publish_webhook_timeout_ms) / 1000.0
        # Injected clients let tests use httpx.MockTransport.
        self._client = client

    def _url_for(self, entry: PublicationQueueEntry) -> str:
        if not self._url_template:
            raise PublishError("publish webhook URL is not configured")
        return self._url_template.replace("{destination_id}", str(entry.destination_id))

    async def publish(self, entry: PublicationQueueEntry) -> PublishResult:
        url = self._url_for(entry)
        body = json.dumps(
            build_publish_payload(entry), separators=(",", ":"), ensure_ascii=False
        ).encode("utf-8")
        headers = {"Content-Type": "application/json", "X-ContentFlow-Entry": entry.id}
        if self._secret:
            headers["X-ContentFlow-Signature"] = build_publish_signature(self._secret, body)

        try:
            if self._client is not None:
                response = await self._client.post(url, content=body, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(url, content=body, headers=headers)
        except httpx.HTTPError as exc:
            logger.warning(
                "publish_webhook_failed entry_id=%s destination_id=%s",
                entry.id,
                entry.destination_id,
                exc_info=exc,
            )
            raise PublishError(f"publish request failed: {exc}") from exc

        if response.status_code >= 400:
            raise PublishError(f"destination responded with status {response.status_code}")

        external_id = None
        try:
            data = response.json()
        except ValueError:
            data = None
        if isinstance(data, dict) and data.get("id") is not None:
            external_id = str(data["id"])
        return PublishResult(status_code=response.status_code, external_id=external_id)
