"""Socket.IO push transport for an Evolution API instance."""

from __future__ import annotations

import socketio

from ..config import SyncSettings
from .base import EventHandler, PushConnector


class SocketIOPushHandle:
    """Wraps :class:`socketio.AsyncClient` bound to the instance namespace.

    The client's own reconnection is disabled; retries are driven by
    :class:`~convosync.sync.push.PushChannelManager` so attempts are counted
    in one place.
    """

    def __init__(
        self,
        base_url: str,
        instance: str,
        api_key: str,
        *,
        wait_timeout: float = 10.0,
        client: socketio.AsyncClient | None = None,
    ) -> None:
        self.url = base_url.rstrip("/")
        self.namespace = f"/{instance}"
        self._api_key = api_key
        self._wait_timeout = wait_timeout
        self._client = client or socketio.AsyncClient(reconnection=False)

    def on(self, event: str, handler: EventHandler) -> None:
        self._client.on(event, handler, namespace=self.namespace)

    async def connect(self) -> None:
        await self._client.connect(
            self.url,
            headers={"apikey": self._api_key},
            namespaces=[self.namespace],
            transports=["websocket"],
            wait_timeout=self._wait_timeout,
        )

    async def disconnect(self) -> None:
        await self._client.disconnect()


def socketio_connector(settings: SyncSettings) -> PushConnector:
    """Connector producing a fresh client per connection attempt."""

    async def connect() -> SocketIOPushHandle:
        return SocketIOPushHandle(
            settings.provider_base_url,
            settings.provider_instance,
            settings.provider_api_key,
            wait_timeout=settings.request_timeout,
        )

    return connect
