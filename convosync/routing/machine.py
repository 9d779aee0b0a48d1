"""Department routing transitions.

``NoDepartment -> SelectionSent -> Assigned | PendingUnassigned``

All functions here are pure: given a conversation and an event they return a
:class:`~.states.Transition`. Replaying the same event against the resulting
conversation yields no further effects, which is what keeps duplicate
push/refresh deliveries from double-sending prompts or confirmations.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime

from ..config import DEFAULT_CONFIRMATION_TEMPLATE
from ..conversations.models import (
    Agent,
    Conversation,
    ConversationStatus,
    Department,
    Message,
    MessageStatus,
    Sender,
)
from ..reconciliation.identity import key_of
from ..reconciliation.merge import are_equivalent, order_key
from .departments import first_agent_for, resolve_selection
from .states import (
    LEGACY_PROMPT_PREFIX,
    ROUTING_CONFIRMED_MARKER,
    SELECTION_PROMPT_MARKER,
    NoDepartment,
    SelectionSent,
    SendConfirmation,
    SendSelectionPrompt,
    Transition,
    WriteRecord,
    WriteStatus,
    routing_state_of,
)

Resolver = Callable[[str, Sequence[Department]], "str | None"]


@dataclass(frozen=True)
class RoutingContext:
    """Everything a routing decision needs besides the conversation itself."""

    departments: tuple[Department, ...]
    agents: tuple[Agent, ...]
    now: datetime
    confirmation_template: str = DEFAULT_CONFIRMATION_TEMPLATE
    lookback_messages: int = 30
    lookback_seconds: float = 300.0
    resolve: Resolver = resolve_selection

    def state_of(self, conversation: Conversation):
        return routing_state_of(
            conversation,
            self.now,
            lookback_messages=self.lookback_messages,
            lookback_seconds=self.lookback_seconds,
        )


def _sorted(messages: list[Message]) -> list[Message]:
    return sorted(messages, key=order_key)


def _system_message(message_id: str, content: str, now: datetime, marker: str) -> Message:
    return Message(
        id=message_id,
        sender=Sender.SYSTEM,
        content=content,
        timestamp=now,
        status=MessageStatus.READ,
        marker=marker,
    )


def _reopen_write(conversation: Conversation, reopened: bool) -> tuple:
    return (WriteStatus.of(conversation, reopened=True),) if reopened else ()


def route_inbound(
    conversation: Conversation,
    message: Message,
    context: RoutingContext,
    *,
    reopened: bool = False,
) -> Transition:
    """React to a new inbound user message.

    ``reopened`` is set when the lifecycle controller has just moved the
    conversation out of ``closed``; the reopen is then persisted together
    with the outcome of routing so the store never lags behind in ``closed``.
    """

    state = context.state_of(conversation)
    if isinstance(state, SelectionSent):
        return _resolve_reply(conversation, message, context, state, reopened)
    if not isinstance(state, NoDepartment):
        return Transition(conversation, _reopen_write(conversation, reopened))
    if conversation.assigned_agent_id and conversation.status == ConversationStatus.OPEN:
        # an agent picked the conversation up by hand
        return Transition(conversation, _reopen_write(conversation, reopened))
    if not context.departments:
        return Transition(conversation, _reopen_write(conversation, reopened))
    prompted = conversation.evolve(selection_prompt_pending=True)
    return Transition(
        prompted,
        (
            SendSelectionPrompt(
                conversation_id=conversation.id,
                contact_address=conversation.contact_address,
                departments=tuple(context.departments),
                reopen=reopened,
            ),
        ),
    )


def _resolve_reply(
    conversation: Conversation,
    message: Message,
    context: RoutingContext,
    state: SelectionSent,
    reopened: bool,
) -> Transition:
    department_id = context.resolve(message.content, context.departments)
    department = next((d for d in context.departments if d.id == department_id), None)
    if department is None:
        if (
            not state.delivered
            and not conversation.selection_retry_used
            and not conversation.selection_prompt_pending
            and context.departments
        ):
            retry = conversation.evolve(
                selection_retry_used=True, selection_prompt_pending=True
            )
            return Transition(
                retry,
                (
                    SendSelectionPrompt(
                        conversation_id=conversation.id,
                        contact_address=conversation.contact_address,
                        departments=tuple(context.departments),
                        reopen=reopened,
                    ),
                ),
            )
        return Transition(conversation, _reopen_write(conversation, reopened))

    agent = first_agent_for(context.agents, department.id)
    summary = f"Conversation routed to {department.name}"
    if agent is not None:
        summary += f" and assigned to {agent.name}"
    confirmation = _system_message(
        f"sys_routing_{key_of(message)}", summary, context.now, ROUTING_CONFIRMED_MARKER
    )

    messages = list(conversation.messages)
    suppressed = list(conversation.suppressed)
    if message.content.strip().isdigit():
        messages = [m for m in messages if not are_equivalent(m, message)]
        suppressed.append(message)
    messages = [m for m in messages if m.id != confirmation.id]
    messages.append(confirmation)

    routed = conversation.evolve(
        messages=_sorted(messages),
        suppressed=suppressed,
        department_id=department.id,
        assigned_agent_id=agent.id if agent else None,
        status=ConversationStatus.OPEN if agent else ConversationStatus.PENDING,
        awaiting_department_selection=False,
        selection_prompt_pending=False,
    )
    return Transition(
        routed,
        (
            SendConfirmation(
                conversation_id=conversation.id,
                contact_address=conversation.contact_address,
                department_name=department.name,
                template=context.confirmation_template,
            ),
            WriteStatus.of(routed, reopened=reopened),
            WriteRecord(conversation.id),
        ),
    )


def on_prompt_result(
    conversation: Conversation, sent: bool, now: datetime, *, reopen: bool = False
) -> Transition:
    """Record the outcome of a :class:`SendSelectionPrompt` effect."""

    if conversation.department_id:
        # a reply was resolved while the prompt was in flight
        return Transition(conversation.evolve(selection_prompt_pending=False))
    if not sent:
        failed = conversation.evolve(selection_prompt_pending=False)
        return Transition(failed, _reopen_write(failed, reopen))
    marker = _system_message(
        f"sys_dept_selection_{conversation.id}_{int(now.timestamp() * 1000)}",
        f"{LEGACY_PROMPT_PREFIX} - department selection prompt delivered",
        now,
        SELECTION_PROMPT_MARKER,
    )
    delivered = conversation.evolve(
        messages=_sorted([*conversation.messages, marker]),
        selection_prompt_pending=False,
        awaiting_department_selection=True,
        department_selection_sent=True,
    )
    return Transition(delivered, (WriteStatus.of(delivered, reopened=reopen),))


def route_agent_send(conversation: Conversation, context: RoutingContext) -> Transition:
    """Prompt for a department after an agent wrote to an unrouted conversation.

    Only while nobody owns the conversation yet: it is ``pending`` or has no
    assigned agent, and no prompt has gone out for the current cycle.
    """

    if conversation.status == ConversationStatus.CLOSED:
        return Transition(conversation)
    if conversation.department_selection_sent or not context.departments:
        return Transition(conversation)
    if not isinstance(context.state_of(conversation), NoDepartment):
        return Transition(conversation)
    if conversation.status != ConversationStatus.PENDING and conversation.assigned_agent_id:
        return Transition(conversation)
    prompted = conversation.evolve(selection_prompt_pending=True)
    return Transition(
        prompted,
        (
            SendSelectionPrompt(
                conversation_id=conversation.id,
                contact_address=conversation.contact_address,
                departments=tuple(context.departments),
            ),
        ),
    )
