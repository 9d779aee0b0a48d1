"""Live push channel: connection lifecycle and inbound event batching.

State machine::

    disconnected -> connecting -> connected
                        |
                        +-> failed   (after ``max_attempts`` failed attempts)

Once ``failed`` no further automatic attempts are made; the refresh channel
keeps the inbox up to date on its own until :meth:`PushChannelManager.reconnect`
is called.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from ..providers.base import PushConnector, PushHandle
from ..providers.evolution import flatten_payload
from .batcher import MicroBatcher

logger = logging.getLogger(__name__)

UPSERT_EVENT = "messages.upsert"
UPDATE_EVENT = "messages.update"

#: Disconnect reasons that mean we hung up ourselves.
CLIENT_DISCONNECT_REASONS = {"client disconnect", "io client disconnect"}


class PushState:
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff for the ``attempt``-th failure (1-based), capped."""

    return min(cap, base * (2 ** max(0, attempt - 1)))


async def _maybe_await(value: Any) -> None:
    if inspect.isawaitable(value):
        await value


class PushChannelManager:
    """Owns the push connection and feeds inbound events to the engine."""

    def __init__(
        self,
        connector: PushConnector | None,
        *,
        on_batch: Callable[[str, list[dict[str, Any]]], Awaitable[None]],
        on_status: Callable[[dict[str, Any]], Awaitable[None] | None],
        conversation_key: Callable[[Mapping[str, Any]], str | None],
        instance: str = "",
        credential: str = "",
        on_state_change: Callable[[str], None] | None = None,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_cap: float = 5.0,
        debounce: float = 0.025,
        max_wait: float = 0.1,
    ) -> None:
        self._connector = connector
        self._on_status = on_status
        self._conversation_key = conversation_key
        self._on_state_change = on_state_change
        self.instance = instance
        self._credential = credential
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.state = PushState.DISCONNECTED
        self.attempts = 0
        self.last_error: str | None = None
        self._handle: PushHandle | None = None
        self._reconnect_task: asyncio.Task | None = None
        self._stopped = True
        self._closing = False
        self._batcher: MicroBatcher[str, dict[str, Any]] = MicroBatcher(
            key=self._batch_key,
            flush=on_batch,
            debounce=debounce,
            max_wait=max_wait,
        )

    # ------------------------------------------------------------------
    # State

    @property
    def can_connect(self) -> bool:
        return bool(self._connector and self.instance and self._credential)

    @property
    def connected(self) -> bool:
        return self.state == PushState.CONNECTED

    def _set_state(self, state: str) -> None:
        if state == self.state:
            return
        logger.info("Push channel %s -> %s", self.state, state)
        self.state = state
        if self._on_state_change is not None:
            self._on_state_change(state)

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(self) -> bool:
        """Connect if the preconditions hold; return whether an attempt ran."""

        # webhook ingress keeps using the batcher even without a socket
        self._batcher.reopen()
        if not self.can_connect:
            logger.info(
                "Push channel not started: provider instance or credential missing"
            )
            return False
        self._stopped = False
        await self._attempt()
        return True

    async def reconnect(self) -> bool:
        """Manual retry trigger; resets the attempt counter."""

        self._cancel_reconnect()
        await self._drop_handle()
        self.attempts = 0
        self.last_error = None
        self._set_state(PushState.DISCONNECTED)
        return await self.start()

    async def stop(self) -> None:
        self._stopped = True
        self._cancel_reconnect()
        await self._batcher.close()
        await self._drop_handle()
        self._set_state(PushState.DISCONNECTED)

    async def _attempt(self) -> None:
        if self._stopped or self.state in (PushState.CONNECTING, PushState.CONNECTED):
            return
        self._set_state(PushState.CONNECTING)
        self.attempts += 1
        try:
            handle = await self._connector()
            self._bind(handle)
            self._handle = handle
            await handle.connect()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            await self._connect_failed(exc)
            return
        if self.state == PushState.CONNECTING:
            self._connected()

    def _bind(self, handle: PushHandle) -> None:
        handle.on("connect", self._handle_connect)
        handle.on("disconnect", self._handle_disconnect)
        handle.on("connect_error", self._handle_connect_error)
        handle.on(UPSERT_EVENT, self.ingest_upsert)
        handle.on(UPDATE_EVENT, self.ingest_status)

    async def _drop_handle(self) -> None:
        handle, self._handle = self._handle, None
        if handle is None:
            return
        self._closing = True
        try:
            await handle.disconnect()
        except Exception as exc:
            logger.debug("Ignoring error while closing push handle: %s", exc)
        finally:
            self._closing = False

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _schedule_reconnect(self) -> None:
        if self._stopped or (self._reconnect_task and not self._reconnect_task.done()):
            return
        delay = backoff_delay(max(1, self.attempts), self.backoff_base, self.backoff_cap)
        logger.info("Reconnecting push channel in %.2fs (attempt %d)", delay, self.attempts + 1)
        self._reconnect_task = asyncio.get_running_loop().create_task(
            self._reconnect_after(delay)
        )

    async def _reconnect_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        self._reconnect_task = None
        await self._attempt()

    # ------------------------------------------------------------------
    # Connection events

    def _connected(self) -> None:
        self.attempts = 0
        self.last_error = None
        self._set_state(PushState.CONNECTED)

    async def _connect_failed(self, exc: BaseException | str) -> None:
        self.last_error = str(exc)
        await self._drop_handle()
        if self.attempts >= self.max_attempts:
            logger.error(
                "Push channel failed after %d attempts, falling back to polling: %s",
                self.attempts,
                self.last_error,
            )
            self._set_state(PushState.FAILED)
            return
        logger.warning("Push connect attempt %d failed: %s", self.attempts, self.last_error)
        self._set_state(PushState.DISCONNECTED)
        self._schedule_reconnect()

    async def _handle_connect(self, *args: Any) -> None:
        self._connected()

    async def _handle_connect_error(self, data: Any = None, *args: Any) -> None:
        self.last_error = str(data)
        if self.state == PushState.CONNECTING:
            # connect() is still awaiting and will raise
            return
        if self.state == PushState.CONNECTED:
            await self._connect_failed(str(data))

    async def _handle_disconnect(self, reason: Any = None, *args: Any) -> None:
        if self._closing or self._stopped or self.state == PushState.FAILED:
            return
        self._set_state(PushState.DISCONNECTED)
        if str(reason or "").lower() in CLIENT_DISCONNECT_REASONS:
            return
        logger.warning("Push channel dropped by server (%s)", reason)
        self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Inbound events

    def _batch_key(self, item: dict[str, Any]) -> str:
        return item["__conversation_id"]

    async def ingest_upsert(self, payload: Any, *args: Any) -> int:
        """Queue message events for batching; returns how many were queued."""

        queued = 0
        for item in flatten_payload(payload):
            try:
                conversation_id = self._conversation_key(item)
            except Exception as exc:
                logger.warning("Skipping push message without conversation: %s", exc)
                continue
            if not conversation_id:
                logger.warning("Skipping push message without conversation id")
                continue
            item["__conversation_id"] = conversation_id
            self._batcher.add(item)
            queued += 1
        return queued

    async def ingest_status(self, payload: Any, *args: Any) -> None:
        for item in flatten_payload(payload):
            try:
                await _maybe_await(self._on_status(item))
            except Exception:
                logger.warning("Skipping malformed status update", exc_info=True)

    async def flush(self) -> None:
        """Flush every pending batch immediately."""

        await self._batcher.flush_all()
