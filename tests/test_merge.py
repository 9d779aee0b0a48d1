import dataclasses
import itertools
from datetime import timedelta

import pytest

from conftest import NOW, agent_message, user_message

from convosync.conversations.models import MessageStatus
from convosync.reconciliation.merge import (
    are_equivalent,
    merge_messages,
    new_messages,
    without_suppressed,
)


def _sec(seconds: float):
    return NOW + timedelta(seconds=seconds)


def _inbox():
    stored = [
        user_message("P1", "Hi", _sec(0)),
        agent_message("local_a", "*Ana - Sales*:\nHello Maria", _sec(10)),
        user_message("P3", "I need help", _sec(20)),
    ]
    fetched = [
        user_message("P1", "Hi", _sec(0), status=MessageStatus.READ),
        agent_message(
            "P2",
            "Hello Maria",
            _sec(12),
            provider_message_id="P2",
            status=MessageStatus.DELIVERED,
        ),
        user_message("P4", "With my order", _sec(25)),
    ]
    return stored, fetched


def test_merge_is_idempotent():
    stored, fetched = _inbox()
    merged = merge_messages(stored, fetched)

    assert merge_messages(merged, merged) == merged
    assert merge_messages(merged, fetched) == merged
    assert merge_messages(stored, merged) == merged


def test_merge_is_commutative():
    stored, fetched = _inbox()
    assert merge_messages(stored, fetched) == merge_messages(fetched, stored)


def test_merge_collapses_duplicates_and_orders_by_time():
    stored, fetched = _inbox()
    merged = merge_messages(stored, fetched)

    assert [m.content for m in merged] == ["Hi", "Hello Maria", "I need help", "With my order"]
    assert [m.timestamp for m in merged] == sorted(m.timestamp for m in merged)


def test_transport_identity_wins_and_fields_are_united():
    optimistic = agent_message(
        "local_b",
        "Here is the invoice",
        _sec(0),
        media_url="https://cdn.test/invoice.pdf",
        file_name="invoice.pdf",
        status=MessageStatus.READ,
    )
    echo = agent_message(
        "P9",
        "*Ana - Sales*:\nHere is the invoice",
        _sec(30),
        provider_message_id="P9",
        status=MessageStatus.SENT,
    )

    (survivor,) = merge_messages([optimistic], [echo])

    assert survivor.id == "P9"
    assert survivor.provider_message_id == "P9"
    assert survivor.media_url == "https://cdn.test/invoice.pdf"
    assert survivor.file_name == "invoice.pdf"
    assert survivor.status == MessageStatus.READ


def test_local_id_matching_transport_id_is_equivalent():
    a = agent_message("3EB0", "ok", _sec(0))
    b = agent_message("other", "completely different", _sec(500), provider_message_id="3EB0")
    assert are_equivalent(a, b)


def test_distinct_transport_ids_are_never_collapsed():
    first = user_message("P1", "ok", _sec(0))
    second = user_message("P2", "ok", _sec(1))

    assert not are_equivalent(first, second)
    assert len(merge_messages([first], [second])) == 2


def test_fallback_window_depends_on_sender():
    assert are_equivalent(agent_message("a", "Done", _sec(0)), agent_message("b", "Done", _sec(59)))
    assert not are_equivalent(
        agent_message("a", "Done", _sec(0)), agent_message("b", "Done", _sec(61))
    )
    loose_user = dataclasses.replace(user_message("x", "Yes", _sec(0)), provider_message_id=None)
    assert are_equivalent(loose_user, dataclasses.replace(loose_user, id="y", timestamp=_sec(14)))
    assert not are_equivalent(
        loose_user, dataclasses.replace(loose_user, id="y", timestamp=_sec(16))
    )


def test_empty_content_requires_same_media():
    a = agent_message("a", "", _sec(0), media_url="https://cdn.test/1.jpg")
    b = agent_message("b", "", _sec(1), media_url="https://cdn.test/1.jpg")
    c = agent_message("c", "", _sec(1), media_url="https://cdn.test/2.jpg")

    assert are_equivalent(a, b)
    assert not are_equivalent(a, c)


def test_new_messages_and_suppression():
    stored, fetched = _inbox()
    merged = merge_messages(stored, fetched)

    fresh = new_messages(stored, merged)
    assert [m.id for m in fresh] == ["P4"]

    assert [m.id for m in without_suppressed(fetched, [fetched[2]])] == ["P1", "P2"]


def _copies():
    return [
        user_message("P1", "Hi", _sec(0), raw={"src": "push"}),
        user_message("P1", "Hi", _sec(0), raw={"src": "rest"}, status=MessageStatus.READ),
        user_message("P5", "", _sec(5), media_url="https://cdn.test/a.jpg"),
        user_message("P5", "", _sec(5), media_url="https://cdn.test/b.jpg", file_name="b.jpg"),
        agent_message("local_c", "Thanks", _sec(40)),
        agent_message("P6", "*Ana - Sales*:\nThanks", _sec(45), provider_message_id="P6"),
    ]


def test_copies_differing_only_in_payload_merge_the_same_both_ways():
    push, rest = _copies()[:2]

    forward = merge_messages([push], [rest])
    backward = merge_messages([rest], [push])

    assert forward == backward
    (survivor,) = forward
    assert survivor.raw == {"src": "push"}
    assert survivor.status == MessageStatus.READ


@pytest.mark.parametrize("split", [0, 2, 3, 6])
def test_merge_ignores_argument_order_and_split(split):
    messages = _copies()
    expected = merge_messages(messages, [])

    for ordering in itertools.permutations(messages):
        assert merge_messages(ordering[:split], ordering[split:]) == expected


def test_merge_result_absorbs_any_subset_of_its_inputs():
    messages = _copies()
    merged = merge_messages(messages, [])

    assert [m.id for m in merged] == ["P1", "P5", "P6"]
    assert merged[1].media_url == "https://cdn.test/a.jpg"
    assert merged[1].file_name == "b.jpg"
    for size in range(1, len(messages) + 1):
        for subset in itertools.combinations(messages, size):
            assert merge_messages(merged, subset) == merged
            assert merge_messages(subset, merged) == merged
