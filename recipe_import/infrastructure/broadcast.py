"""Status broadcasting to clients following an import.

The transport (WebSocket fan-out, server-sent events, ...) lives outside this
service.  Workers only need something that accepts a :class:`StatusEvent`;
tests and local runs use the recording in-memory implementation, deployments
point ``STATUS_BROADCAST_URL`` at the push gateway.
"""
from __future__ import annotations

from typing import Any, Protocol

import httpx

from recipe_import.core.schema import StatusEvent


class StatusBroadcaster(Protocol):
    """Contract for status event sinks."""

    async def broadcast(self, event: StatusEvent) -> None:
        """Deliver a status event to subscribed clients."""


class StatusBroadcastError(RuntimeError):
    """Raised when the push gateway rejects a status event."""


class InMemoryStatusBroadcaster:
    """Broadcaster that records events instead of delivering them."""

    def __init__(self) -> None:
        self.events: list[StatusEvent] = []

    async def broadcast(self, event: StatusEvent) -> None:
        self.events.append(event)

    def events_for(self, note_id: str, *, status: str | None = None) -> list[StatusEvent]:
        return [
            event
            for event in self.events
            if event.note_id == note_id and (status is None or event.status == status)
        ]

    def clear(self) -> None:
        self.events.clear()


class HttpStatusBroadcaster:
    """POST status events as JSON to an HTTP push gateway."""

    def __init__(
        self,
        url: str,
        *,
        timeout: float = 10.0,
        headers: dict[str, str] | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        parsed = httpx.URL(url)
        if not parsed.scheme or not parsed.host:
            raise ValueError("url must include scheme and host")
        self._url = url
        self._client = http_client or httpx.AsyncClient(timeout=timeout, headers=headers)
        self._owns_client = http_client is None

    @staticmethod
    def _serialise(event: StatusEvent) -> dict[str, Any]:
        return event.model_dump(mode="json", by_alias=True, exclude_none=True)

    async def broadcast(self, event: StatusEvent) -> None:
        response = await self._client.post(self._url, json=self._serialise(event))
        if response.status_code >= 400:
            raise StatusBroadcastError(f"status gateway returned {response.status_code}: {response.text[:200]}")

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()


_broadcaster: StatusBroadcaster = InMemoryStatusBroadcaster()


def configure_status_broadcaster(broadcaster: StatusBroadcaster) -> None:
    """Install the broadcaster used by the completion service and workers."""

    global _broadcaster
    _broadcaster = broadcaster


def get_status_broadcaster() -> StatusBroadcaster:
    """Return the currently configured broadcaster."""

    return _broadcaster


__all__ = [
    "HttpStatusBroadcaster",
    "InMemoryStatusBroadcaster",
    "StatusBroadcastError",
    "StatusBroadcaster",
    "configure_status_broadcaster",
    "get_status_broadcaster",
]
