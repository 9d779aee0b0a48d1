"""Duplicate detection and merging of multi-sourced message lists."""

from __future__ import annotations

import dataclasses
import json
from collections.abc import Iterable, Sequence

from ..conversations.models import OPTIONAL_MESSAGE_FIELDS, Message, MessageStatus, Sender
from .identity import epoch_seconds, local_id_of, normalized_content, provider_id_of

AGENT_WINDOW_SECONDS = 60.0
DEFAULT_WINDOW_SECONDS = 15.0


def equivalence_window(sender: str) -> float:
    """Clock skew tolerated between two copies of one message."""

    return AGENT_WINDOW_SECONDS if sender == Sender.AGENT else DEFAULT_WINDOW_SECONDS


def are_equivalent(a: Message, b: Message) -> bool:
    """Return ``True`` when ``a`` and ``b`` describe the same message."""

    pa, pb = provider_id_of(a), provider_id_of(b)
    la, lb = local_id_of(a), local_id_of(b)
    if pa and pa == pb:
        return True
    if (pa and pa == lb) or (pb and pb == la):
        return True
    if la and la == lb:
        return True
    if pa and pb:
        # two distinct transport identities are always two messages
        return False
    if a.sender != b.sender:
        return False
    content_a = normalized_content(a)
    if content_a != normalized_content(b):
        return False
    if not content_a and not (a.media_url and a.media_url == b.media_url):
        return False
    return abs(epoch_seconds(a) - epoch_seconds(b)) <= equivalence_window(a.sender)


def order_key(message: Message) -> tuple[float, str, str, str, str]:
    """Total order: timestamp, then transport id, local id, sender, content."""

    return (
        epoch_seconds(message),
        provider_id_of(message) or "",
        local_id_of(message) or "",
        message.sender,
        message.content,
    )


def _canonical(value: object) -> str:
    return json.dumps(value, sort_keys=True, default=str)


def _core_fingerprint(message: Message) -> str:
    fields = dataclasses.asdict(message)
    for name in (*OPTIONAL_MESSAGE_FIELDS, "status"):
        fields.pop(name, None)
    return _canonical(fields)


def _precedence_key(message: Message) -> tuple[int, float, str, str, str]:
    # min() of this key is the survivor
    return (
        0 if provider_id_of(message) else 1,
        -epoch_seconds(message),
        provider_id_of(message) or "",
        local_id_of(message) or "",
        _core_fingerprint(message),
    )


class _Cluster:
    __slots__ = ("members", "provider_ids")

    def __init__(self) -> None:
        self.members: list[tuple[int, Message]] = []
        self.provider_ids: set[str] = set()

    def add(self, position: int, message: Message) -> None:
        self.members.append((position, message))
        provider_id = provider_id_of(message)
        if provider_id:
            self.provider_ids.add(provider_id)

    def absorb(self, other: "_Cluster") -> None:
        self.members.extend(other.members)
        self.provider_ids |= other.provider_ids

    def matches(self, message: Message) -> bool:
        return any(are_equivalent(member, message) for _, member in self.members)

    def compatible(self, provider_ids: set[str]) -> bool:
        return len(self.provider_ids | provider_ids) <= 1


def _collapse(cluster: _Cluster) -> tuple[int, Message]:
    position = min(p for p, _ in cluster.members)
    keyed = [(_precedence_key(m), m) for _, m in cluster.members]
    keyed.sort(key=lambda item: item[0])
    survivor = keyed[0][1]
    if len(keyed) == 1:
        return position, survivor
    changes: dict[str, object] = {}
    for name in OPTIONAL_MESSAGE_FIELDS:
        # each field comes from the highest-ranked copy that has it; equal
        # ranks are settled by the value itself so argument order never matters
        candidates = [
            (key, _canonical(getattr(m, name)), getattr(m, name))
            for key, m in keyed
            if getattr(m, name) is not None
        ]
        if not candidates:
            continue
        value = min(candidates, key=lambda item: item[:2])[2]
        if value != getattr(survivor, name):
            changes[name] = value
    best_status = max(
        (m.status for _, m in keyed), key=lambda s: MessageStatus.RANK.get(s, 1)
    )
    if best_status != survivor.status:
        changes["status"] = best_status
    if changes:
        survivor = dataclasses.replace(survivor, **changes)
    return position, survivor


def merge_messages(
    authoritative: Iterable[Message], incoming: Iterable[Message]
) -> list[Message]:
    """Combine two message collections into one de-duplicated, ordered list.

    Equivalent messages (see :func:`are_equivalent`) collapse into a single
    survivor chosen by precedence: a transport identity wins, then the later
    timestamp, then lexical transport id and local id. The survivor inherits
    any optional field (media reference, raw payload, ...) it lacks from the
    copies it replaces; when equally ranked copies disagree on a field, the
    canonical JSON of the value decides. The result does not depend on
    argument order and merging a result again with either input returns the
    same result.
    """

    pool = sorted(
        [*authoritative, *incoming],
        key=lambda m: (*order_key(m), _canonical(dataclasses.asdict(m))),
    )
    clusters: list[_Cluster] = []
    for position, message in enumerate(pool):
        own_ids = {p for p in (provider_id_of(message),) if p}
        target: _Cluster | None = None
        for cluster in list(clusters):
            if not cluster.matches(message):
                continue
            if target is None:
                if cluster.compatible(own_ids):
                    target = cluster
            elif target.compatible(cluster.provider_ids | own_ids):
                target.absorb(cluster)
                clusters.remove(cluster)
        if target is None:
            target = _Cluster()
            clusters.append(target)
        target.add(position, message)

    survivors = [_collapse(cluster) for cluster in clusters]
    survivors.sort(key=lambda item: (*order_key(item[1]), item[0]))
    return [message for _, message in survivors]


def contains_equivalent(messages: Iterable[Message], candidate: Message) -> bool:
    return any(are_equivalent(existing, candidate) for existing in messages)


def new_messages(before: Sequence[Message], after: Iterable[Message]) -> list[Message]:
    """Messages in ``after`` that have no equivalent in ``before``."""

    return [m for m in after if not contains_equivalent(before, m)]


def without_suppressed(
    messages: Iterable[Message], suppressed: Sequence[Message]
) -> list[Message]:
    if not suppressed:
        return list(messages)
    return [m for m in messages if not contains_equivalent(suppressed, m)]
