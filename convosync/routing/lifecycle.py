"""Conversation lifecycle: open/pending/closed, reopen and rating capture.

Inbound user messages enter here first (:func:`evaluate_inbound`); anything
that is not consumed as a rating is handed to the routing machine. Agent
actions (close, transfer, assign, pending) are also expressed as pure
transitions so the engine executes their writes the same way.
"""

from __future__ import annotations

from datetime import datetime

from ..conversations.models import (
    Conversation,
    ConversationStatus,
    Department,
    Message,
    MessageStatus,
    Sender,
)
from ..reconciliation.merge import contains_equivalent, order_key
from . import machine
from .states import (
    CLOSE_MARKER,
    REOPEN_MARKER,
    Closed,
    ClosedAwaitingRating,
    SendText,
    Transition,
    WriteRecord,
    WriteStatus,
    lifecycle_state_of,
)

RATING_MARKER = "rating_received"
TRANSFER_MARKER = "conversation_transferred"

_RATING_REPLIES = {"1", "2", "3", "4", "5"}


def parse_rating(content: str) -> int | None:
    """A rating reply is exactly one digit from 1 to 5."""

    text = (content or "").strip()
    return int(text) if text in _RATING_REPLIES else None


def _note(
    conversation: Conversation, suffix: str, content: str, now: datetime, marker: str
) -> Message:
    return Message(
        id=f"sys_{suffix}_{conversation.id}_{int(now.timestamp() * 1000)}",
        sender=Sender.SYSTEM,
        content=content,
        timestamp=now,
        status=MessageStatus.READ,
        marker=marker,
    )


def _with_note(conversation: Conversation, note: Message) -> list[Message]:
    return sorted([*conversation.messages, note], key=order_key)


def evaluate_inbound(
    conversation: Conversation, message: Message, context: machine.RoutingContext
) -> Transition:
    """Apply one new inbound message to the conversation."""

    if message.sender != Sender.USER:
        return Transition(conversation)
    if contains_equivalent(conversation.suppressed, message):
        return Transition(conversation)

    state = lifecycle_state_of(conversation)
    if isinstance(state, ClosedAwaitingRating):
        rating = parse_rating(message.content)
        if rating is not None:
            return capture_rating(conversation, rating, context.now)
    if isinstance(state, (Closed, ClosedAwaitingRating)):
        return machine.route_inbound(
            reopen(conversation, context.now), message, context, reopened=True
        )
    return machine.route_inbound(conversation, message, context)


def capture_rating(conversation: Conversation, rating: int, now: datetime) -> Transition:
    note = _note(
        conversation, "rating", f"Customer rated the service {rating}/5", now, RATING_MARKER
    )
    rated = conversation.evolve(
        rating=rating,
        awaiting_rating=False,
        messages=_with_note(conversation, note),
    )
    return Transition(rated, (WriteRecord(conversation.id),))


def reopen(conversation: Conversation, now: datetime) -> Conversation:
    """``closed -> pending`` with ownership and routing cleared."""

    note = _note(
        conversation,
        "reopen",
        "Conversation reopened by a new customer message",
        now,
        REOPEN_MARKER,
    )
    return conversation.evolve(
        status=ConversationStatus.PENDING,
        assigned_agent_id=None,
        department_id=None,
        ended_at=None,
        awaiting_rating=False,
        awaiting_department_selection=False,
        department_selection_sent=False,
        selection_prompt_pending=False,
        selection_retry_used=False,
        messages=_with_note(conversation, note),
    )


# -- agent actions ---------------------------------------------------------


def close(
    conversation: Conversation,
    now: datetime,
    *,
    with_survey: bool = False,
    survey_text: str = "",
) -> Transition:
    content = (
        "Conversation closed. A satisfaction survey was sent to the customer."
        if with_survey
        else "Conversation closed by the agent."
    )
    closed = conversation.evolve(
        status=ConversationStatus.CLOSED,
        ended_at=now,
        rating=None,
        awaiting_rating=with_survey,
        assigned_agent_id=None,
        awaiting_department_selection=False,
        selection_prompt_pending=False,
        messages=_with_note(
            conversation, _note(conversation, "close", content, now, CLOSE_MARKER)
        ),
    )
    effects: list = [WriteStatus.of(closed), WriteRecord(conversation.id)]
    if with_survey and survey_text:
        effects.append(SendText(conversation.id, conversation.contact_address, survey_text))
    return Transition(closed, tuple(effects))


def transfer(conversation: Conversation, department: Department, now: datetime) -> Transition:
    note = _note(
        conversation,
        "transfer",
        f"Conversation transferred to {department.name}",
        now,
        TRANSFER_MARKER,
    )
    moved = conversation.evolve(
        department_id=department.id,
        assigned_agent_id=None,
        status=ConversationStatus.PENDING
        if conversation.status == ConversationStatus.OPEN
        else conversation.status,
        awaiting_department_selection=False,
        selection_prompt_pending=False,
        messages=_with_note(conversation, note),
    )
    return Transition(moved, (WriteStatus.of(moved), WriteRecord(conversation.id)))


def assign(conversation: Conversation, agent_id: str) -> Transition:
    assigned = conversation.evolve(
        assigned_agent_id=agent_id,
        status=ConversationStatus.OPEN,
    )
    return Transition(assigned, (WriteStatus.of(assigned),))


def set_pending(conversation: Conversation) -> Transition:
    pending = conversation.evolve(status=ConversationStatus.PENDING)
    return Transition(pending, (WriteStatus.of(pending),))
