"""Explicit per-conversation states and the effects transitions emit.

Routing and lifecycle are modelled as two small tagged unions derived from a
:class:`Conversation`. Transition functions in :mod:`.machine` and
:mod:`.lifecycle` are pure: they return the next conversation value together
with a tuple of effects (sends and writes) that the engine executes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Union

from ..conversations.models import Conversation, ConversationStatus, Department, Message, Sender
from ..reconciliation.identity import epoch_seconds

SELECTION_PROMPT_MARKER = "department_selection_prompt"
ROUTING_CONFIRMED_MARKER = "department_selection_confirmed"
# system messages written by older clients carry this prefix instead of a marker
LEGACY_PROMPT_PREFIX = "department_selection_sent"
CLOSE_MARKER = "conversation_closed"
REOPEN_MARKER = "conversation_reopened"


# -- routing ---------------------------------------------------------------


@dataclass(frozen=True)
class NoDepartment:
    pass


@dataclass(frozen=True)
class SelectionSent:
    delivered: bool = True


@dataclass(frozen=True)
class Assigned:
    department_id: str
    agent_id: str


@dataclass(frozen=True)
class PendingUnassigned:
    department_id: str


RoutingState = Union[NoDepartment, SelectionSent, Assigned, PendingUnassigned]


# -- lifecycle -------------------------------------------------------------


@dataclass(frozen=True)
class Open:
    pass


@dataclass(frozen=True)
class Pending:
    pass


@dataclass(frozen=True)
class Closed:
    pass


@dataclass(frozen=True)
class ClosedAwaitingRating:
    pass


LifecycleState = Union[Open, Pending, Closed, ClosedAwaitingRating]


# -- effects ---------------------------------------------------------------


@dataclass(frozen=True)
class SendSelectionPrompt:
    conversation_id: str
    contact_address: str
    departments: tuple[Department, ...]
    reopen: bool = False


@dataclass(frozen=True)
class SendConfirmation:
    conversation_id: str
    contact_address: str
    department_name: str
    template: str


@dataclass(frozen=True)
class SendText:
    conversation_id: str
    contact_address: str
    text: str


@dataclass(frozen=True)
class WriteStatus:
    conversation_id: str
    status: str
    assigned_agent_id: str | None
    department_id: str | None
    display_name: str | None = None
    avatar: str | None = None
    awaiting_department_selection: bool | None = None
    department_selection_sent: bool | None = None
    # also clear endedAt and awaitingRating left over from the closed cycle
    reopened: bool = False

    @classmethod
    def of(cls, conversation: Conversation, *, reopened: bool = False) -> "WriteStatus":
        return cls(
            conversation_id=conversation.id,
            status=conversation.status,
            assigned_agent_id=conversation.assigned_agent_id,
            department_id=conversation.department_id,
            display_name=conversation.contact_name or None,
            avatar=conversation.contact_avatar or None,
            awaiting_department_selection=conversation.awaiting_department_selection,
            department_selection_sent=conversation.department_selection_sent,
            reopened=reopened,
        )


@dataclass(frozen=True)
class WriteRecord:
    """Persist the whole conversation document as it stands after the transition."""

    conversation_id: str


Effect = Union[SendSelectionPrompt, SendConfirmation, SendText, WriteStatus, WriteRecord]


@dataclass(frozen=True)
class Transition:
    conversation: Conversation
    effects: tuple[Effect, ...] = field(default_factory=tuple)


# -- derivation ------------------------------------------------------------


def is_prompt_message(message: Message) -> bool:
    if message.marker == SELECTION_PROMPT_MARKER:
        return True
    return message.sender == Sender.SYSTEM and message.content.startswith(LEGACY_PROMPT_PREFIX)


def has_recent_prompt(
    messages: list[Message],
    now: datetime,
    *,
    lookback_messages: int = 30,
    lookback_seconds: float = 300.0,
) -> bool:
    """Whether a selection prompt was delivered recently.

    Covers the window where the prompt went out but the persisted flags have
    not been read back yet.
    """

    horizon = now.timestamp() - lookback_seconds
    for message in reversed(messages[-lookback_messages:]):
        if message.marker in (CLOSE_MARKER, REOPEN_MARKER):
            # prompts from before a close belong to the previous cycle
            return False
        if is_prompt_message(message) and epoch_seconds(message) >= horizon:
            return True
    return False


def routing_state_of(
    conversation: Conversation,
    now: datetime,
    *,
    lookback_messages: int = 30,
    lookback_seconds: float = 300.0,
) -> RoutingState:
    if conversation.department_id:
        if conversation.assigned_agent_id:
            return Assigned(conversation.department_id, conversation.assigned_agent_id)
        return PendingUnassigned(conversation.department_id)
    if conversation.awaiting_department_selection or conversation.selection_prompt_pending:
        return SelectionSent(delivered=conversation.department_selection_sent)
    if has_recent_prompt(
        conversation.messages,
        now,
        lookback_messages=lookback_messages,
        lookback_seconds=lookback_seconds,
    ):
        return SelectionSent(delivered=True)
    return NoDepartment()


def lifecycle_state_of(conversation: Conversation) -> LifecycleState:
    if conversation.status == ConversationStatus.CLOSED:
        return ClosedAwaitingRating() if conversation.awaiting_rating else Closed()
    if conversation.status == ConversationStatus.OPEN:
        return Open()
    return Pending()
