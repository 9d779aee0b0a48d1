from datetime import timedelta

from conftest import CONTACT, NOW, agent_message, user_message

from convosync.conversations.models import (
    Agent,
    Conversation,
    ConversationStatus,
    Department,
    Message,
    Sender,
)
from convosync.routing import lifecycle
from convosync.routing.machine import RoutingContext, on_prompt_result
from convosync.routing.states import (
    LEGACY_PROMPT_PREFIX,
    SELECTION_PROMPT_MARKER,
    SendSelectionPrompt,
    SendText,
    WriteRecord,
    WriteStatus,
)

DEPARTMENTS = (Department("d1", "Sales"), Department("d2", "Support"))
AGENTS = (Agent("a1", "Ana", ("d1",)), Agent("a2", "Bruno", ("d2",)))
LATER = NOW + timedelta(hours=2)


def _context(now=LATER) -> RoutingContext:
    return RoutingContext(departments=DEPARTMENTS, agents=AGENTS, now=now)


def _closed(awaiting_rating: bool) -> Conversation:
    old_prompt = Message(
        id="sys_old",
        sender=Sender.SYSTEM,
        content=f"{LEGACY_PROMPT_PREFIX} - earlier",
        timestamp=NOW,
        marker=SELECTION_PROMPT_MARKER,
    )
    return Conversation(
        id=CONTACT,
        contact_number="5511999990000",
        status=ConversationStatus.CLOSED,
        assigned_agent_id="a2",
        department_id="d2",
        awaiting_rating=awaiting_rating,
        ended_at=NOW,
    ).evolve(messages=[user_message("P1", "thanks", NOW), old_prompt])


def test_parse_rating_is_strict():
    assert lifecycle.parse_rating(" 4 ") == 4
    assert lifecycle.parse_rating("0") is None
    assert lifecycle.parse_rating("6") is None
    assert lifecycle.parse_rating("5 stars") is None


def test_rating_is_captured_without_reopening():
    conversation = _closed(awaiting_rating=True)
    reply = user_message("P9", "5", LATER)

    transition = lifecycle.evaluate_inbound(conversation, reply, _context())

    rated = transition.conversation
    assert rated.status == ConversationStatus.CLOSED
    assert rated.rating == 5
    assert rated.awaiting_rating is False
    assert rated.department_id == "d2"
    assert [type(e) for e in transition.effects] == [WriteRecord]


def test_non_rating_reply_reopens_closed_survey():
    conversation = _closed(awaiting_rating=True)
    reply = user_message("P9", "I still have a problem", LATER)

    transition = lifecycle.evaluate_inbound(conversation, reply, _context())

    assert transition.conversation.status == ConversationStatus.PENDING
    assert [type(e) for e in transition.effects] == [SendSelectionPrompt]


def test_reopen_clears_ownership_and_requests_one_prompt():
    conversation = _closed(awaiting_rating=False)
    reply = user_message("P9", "Hi again", LATER)

    transition = lifecycle.evaluate_inbound(conversation, reply, _context())
    reopened = transition.conversation

    assert reopened.status == ConversationStatus.PENDING
    assert reopened.assigned_agent_id is None
    assert reopened.department_id is None
    assert reopened.ended_at is None
    (effect,) = transition.effects
    assert isinstance(effect, SendSelectionPrompt)
    assert effect.reopen is True

    delivered = on_prompt_result(reopened, True, LATER, reopen=True)
    (write,) = delivered.effects
    assert isinstance(write, WriteStatus)
    assert write.status == ConversationStatus.PENDING
    assert write.assigned_agent_id is None
    assert write.department_id is None
    assert write.awaiting_department_selection is True
    assert write.reopened is True


def test_reopen_persists_even_when_prompt_fails():
    reopened = lifecycle.evaluate_inbound(
        _closed(awaiting_rating=False), user_message("P9", "Hi", LATER), _context()
    ).conversation

    failed = on_prompt_result(reopened, False, LATER, reopen=True)

    (write,) = failed.effects
    assert write.status == ConversationStatus.PENDING
    assert write.department_id is None
    assert write.reopened is True


def test_quick_reopen_ignores_prompt_from_previous_cycle():
    conversation = _closed(awaiting_rating=False)
    soon = NOW + timedelta(seconds=30)

    transition = lifecycle.evaluate_inbound(
        conversation, user_message("P9", "one more thing", soon), _context(soon)
    )

    assert [type(e) for e in transition.effects] == [SendSelectionPrompt]


def test_agent_and_suppressed_messages_are_ignored():
    conversation = _closed(awaiting_rating=False)
    echo = agent_message("A1", "bye", LATER)
    assert lifecycle.evaluate_inbound(conversation, echo, _context()).conversation is conversation

    removed = user_message("P5", "2", LATER)
    suppressed = conversation.evolve(suppressed=[removed])
    assert lifecycle.evaluate_inbound(suppressed, removed, _context()).effects == ()


def test_close_with_survey():
    conversation = Conversation(
        id=CONTACT, status=ConversationStatus.OPEN, assigned_agent_id="a2", department_id="d2"
    )

    transition = lifecycle.close(conversation, LATER, with_survey=True, survey_text="Rate us 1-5")

    closed = transition.conversation
    assert closed.status == ConversationStatus.CLOSED
    assert closed.awaiting_rating is True
    assert closed.ended_at == LATER
    assert [type(e) for e in transition.effects] == [WriteStatus, WriteRecord, SendText]
    assert transition.effects[2].text == "Rate us 1-5"


def test_close_without_survey_sends_nothing():
    conversation = Conversation(id=CONTACT, status=ConversationStatus.PENDING)
    transition = lifecycle.close(conversation, LATER)
    assert transition.conversation.awaiting_rating is False
    assert not any(isinstance(e, SendText) for e in transition.effects)


def test_transfer_moves_open_conversation_to_pending():
    conversation = Conversation(
        id=CONTACT, status=ConversationStatus.OPEN, assigned_agent_id="a2", department_id="d2"
    )

    transition = lifecycle.transfer(conversation, DEPARTMENTS[0], LATER)

    moved = transition.conversation
    assert moved.department_id == "d1"
    assert moved.assigned_agent_id is None
    assert moved.status == ConversationStatus.PENDING
    assert moved.messages[-1].marker == lifecycle.TRANSFER_MARKER
    assert "Sales" in moved.messages[-1].content


def test_assign_and_pending():
    conversation = Conversation(id=CONTACT, status=ConversationStatus.PENDING, department_id="d1")

    assigned = lifecycle.assign(conversation, "a1")
    assert assigned.conversation.status == ConversationStatus.OPEN
    assert assigned.conversation.assigned_agent_id == "a1"
    assert assigned.effects[0].assigned_agent_id == "a1"

    pending = lifecycle.set_pending(assigned.conversation)
    assert pending.conversation.status == ConversationStatus.PENDING
    assert pending.conversation.assigned_agent_id == "a1"
