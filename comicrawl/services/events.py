"""
Best-effort job event notifications.

Sinks receive ``(job_id, kind, payload)`` for progress, status and
child-created events. Delivery failures are logged by ``publish_safely``
and never reach the crawl.
"""

from collections.abc import Mapping
from enum import Enum
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from comicrawl.core.config import Settings, get_settings
from comicrawl.utils.clock import utcnow
from comicrawl.utils.exceptions import EventDeliveryError
from comicrawl.utils.logging import get_logger
from comicrawl.utils.retry import create_retry_decorator

logger = get_logger(__name__)


class EventKind(str, Enum):
    STATUS = "status"
    PROGRESS = "progress"
    CHILD_CREATED = "child_created"
    DUPLICATE = "duplicate"


class JobEvent(BaseModel):
    """Body POSTed to the webhook."""

    job_id: int
    kind: EventKind
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: str = Field(default_factory=lambda: utcnow().isoformat())


class EventSink(Protocol):
    async def publish(self, job_id: int, kind: EventKind, payload: Mapping[str, Any]) -> None: ...


class LogEventSink:
    """Writes events to the structured log."""

    async def publish(self, job_id: int, kind: EventKind, payload: Mapping[str, Any]) -> None:
        logger.info("Job event", job_id=job_id, kind=kind.value, payload=dict(payload))


class WebhookEventSink:
    """
    POSTs events as JSON to a webhook URL.

    Retries transient failures with Tenacity; a final failure raises
    EventDeliveryError (callers go through ``publish_safely``).
    """

    def __init__(
        self,
        url: str,
        settings: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._url = url
        self._settings = settings or get_settings()
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._send = create_retry_decorator(
            max_attempts=3,
            max_delay=30,
            min_wait=1,
            max_wait=10,
            retry_exceptions=(httpx.HTTPError, EventDeliveryError),
        )(self._send_once)

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            kwargs: dict[str, Any] = {}
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(
                http2=True,
                follow_redirects=True,
                headers={
                    "User-Agent": f"{self._settings.app_name}/1.0",
                    "Accept": "application/json",
                },
                timeout=httpx.Timeout(
                    connect=10.0,
                    read=float(self._settings.event_timeout),
                    write=10.0,
                    pool=5.0,
                ),
                **kwargs,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _send_once(self, event: JobEvent) -> None:
        client = await self._get_client()
        response = await client.post(self._url, json=event.model_dump(mode="json"))
        if response.status_code >= 400:
            logger.warning(
                "Event webhook returned error",
                job_id=event.job_id,
                url=self._url,
                status_code=response.status_code,
                response_body=response.text[:500],
            )
            raise EventDeliveryError(
                f"Event webhook failed with status {response.status_code}",
                url=self._url,
                status_code=response.status_code,
            )

    async def publish(self, job_id: int, kind: EventKind, payload: Mapping[str, Any]) -> None:
        await self._send(JobEvent(job_id=job_id, kind=kind, payload=dict(payload)))


def create_event_sink(settings: Settings | None = None) -> EventSink:
    settings = settings or get_settings()
    if settings.event_webhook_url:
        return WebhookEventSink(settings.event_webhook_url, settings)
    return LogEventSink()


async def publish_safely(
    sink: EventSink | None,
    job_id: int,
    kind: EventKind,
    payload: Mapping[str, Any] | None = None,
) -> None:
    """Publish and swallow any sink failure (logged at WARNING)."""
    if sink is None:
        return
    try:
        await sink.publish(job_id, kind, payload or {})
    except Exception as e:  # noqa: BLE001
        logger.warning(
            "Event publish failed",
            job_id=job_id,
            kind=kind.value,
            error=str(e),
            error_type=type(e).__name__,
        )
