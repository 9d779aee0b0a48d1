"""Interfaces of the collaborators the engine talks to."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from typing import Any, Protocol

from ..conversations.models import Conversation, Department, Message


class RecordStore(Protocol):
    """Generic key/value persistence used as the authoritative source."""

    async def load_snapshot(self, record_type: str) -> dict[str, dict[str, Any]]: ...

    async def write_status(
        self,
        conversation_id: str,
        status: str,
        assigned_agent_id: str | None,
        department_id: str | None,
        display_name: str | None = None,
        avatar: str | None = None,
        awaiting_department_selection: bool | None = None,
        department_selection_sent: bool | None = None,
        reopened: bool = False,
    ) -> bool: ...

    async def write_full_record(self, key: str, record: dict[str, Any]) -> bool: ...


class ProviderClient(Protocol):
    """Messaging provider: the refresh channel plus outbound sends."""

    async def list_conversations(self) -> list[Conversation]: ...

    async def list_messages(self, conversation_id: str, limit: int) -> list[Message]: ...

    async def send_selection_prompt(
        self, contact_address: str, departments: Sequence[Department]
    ) -> bool: ...

    async def send_confirmation(
        self, contact_address: str, department_name: str, template: str
    ) -> bool: ...

    async def send_text(self, contact_address: str, text: str) -> str | None:
        """Send ``text``; return the provider message id, ``None`` on failure."""
        ...


EventHandler = Callable[..., Any]


class PushHandle(Protocol):
    """Low-latency event connection to the provider."""

    def on(self, event: str, handler: EventHandler) -> None: ...

    async def connect(self) -> None: ...

    async def disconnect(self) -> None: ...


PushConnector = Callable[[], Awaitable[PushHandle]]
