"""Domain models shared by the reconciliation, routing and sync layers."""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


class Sender:
    USER = "user"
    AGENT = "agent"
    SYSTEM = "system"


class MessageStatus:
    ERROR = "error"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"

    #: Progression order used when two copies of a message disagree.
    RANK = {ERROR: 0, SENT: 1, DELIVERED: 2, READ: 3}


class ConversationStatus:
    OPEN = "open"
    PENDING = "pending"
    CLOSED = "closed"

    ALL = (OPEN, PENDING, CLOSED)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Message:
    """Uniform representation of a message regardless of the source channel."""

    id: str
    sender: str
    content: str
    timestamp: datetime
    status: str = MessageStatus.SENT
    type: str = "text"
    provider_message_id: str | None = None
    media_url: str | None = None
    file_name: str | None = None
    mime_type: str | None = None
    author: str | None = None
    raw: dict[str, Any] | None = None
    marker: str | None = None


#: Optional fields a merge survivor inherits from its duplicates.
OPTIONAL_MESSAGE_FIELDS = (
    "provider_message_id",
    "media_url",
    "file_name",
    "mime_type",
    "author",
    "raw",
    "marker",
)


@dataclass
class Department:
    id: str
    name: str
    description: str = ""
    color: str = ""


@dataclass
class Agent:
    id: str
    name: str
    department_ids: tuple[str, ...] = ()

    def belongs_to(self, department_id: str) -> bool:
        return department_id in self.department_ids


@dataclass
class Conversation:
    """In-memory view of a conversation as reconciled from every source."""

    id: str
    contact_name: str = ""
    contact_number: str = ""
    contact_avatar: str = ""
    client_code: str | None = None
    tags: list[str] = field(default_factory=list)
    status: str = ConversationStatus.PENDING
    assigned_agent_id: str | None = None
    department_id: str | None = None
    awaiting_department_selection: bool = False
    department_selection_sent: bool = False
    awaiting_rating: bool = False
    rating: int | None = None
    ended_at: datetime | None = None
    messages: list[Message] = field(default_factory=list)
    last_message: str = ""
    last_message_time: datetime | None = None
    unread_count: int = 0
    # Engine bookkeeping, never persisted as authoritative fields.
    selection_prompt_pending: bool = False
    selection_retry_used: bool = False
    suppressed: list[Message] = field(default_factory=list)

    @property
    def contact_address(self) -> str:
        return self.contact_number or self.id

    def evolve(self, **changes: Any) -> "Conversation":
        """Return a copy with ``changes`` applied and the summary refreshed."""

        updated = dataclasses.replace(self, **changes)
        if "messages" in changes:
            updated.messages = list(updated.messages)
            _refresh_summary(updated)
        return updated


def _refresh_summary(conversation: Conversation) -> None:
    visible = [m for m in conversation.messages if m.sender != Sender.SYSTEM]
    if not visible:
        return
    last = visible[-1]
    conversation.last_message = last.content or (f"[{last.type}]" if last.type else "")
    conversation.last_message_time = last.timestamp
