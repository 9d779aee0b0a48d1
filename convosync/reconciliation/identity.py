"""Stable identity and ordering keys for messages from any source.

A message can reach the engine as a :class:`Message` dataclass, as a stored
camelCase record or as a raw provider payload. :func:`key_of` reduces any of
those to one canonical string so call sites never re-derive identity on their
own.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from ..conversations.models import Message, Sender

GENERATED_CONTENT_LENGTH = 50

# "*Ana - Sales*:\n" as prepended by the agent console, or "Ana:\n".
_BOLD_HEADER = re.compile(r"^\s*\*[^*\n]{1,80}\*\s*:?[ \t]*\n?")
_PLAIN_HEADER = re.compile(r"^\s*[^:*\n]{1,80}:[ \t]*\n")

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


def _field(message: Any, attr: str, *keys: str) -> Any:
    if isinstance(message, Message):
        return getattr(message, attr, None)
    if isinstance(message, Mapping):
        for key in (attr, *keys):
            value = message.get(key)
            if value not in (None, ""):
                return value
        return None
    return getattr(message, attr, None)


def provider_id_of(message: Any) -> str | None:
    """Return the transport-native identity, if any."""

    try:
        value = _field(message, "provider_message_id", "providerMessageId", "whatsappMessageId")
        if value is None and isinstance(message, Mapping):
            key = message.get("key")
            if isinstance(key, Mapping):
                value = key.get("id")
    except Exception:  # pragma: no cover - exotic inputs
        return None
    return str(value) if value not in (None, "") else None


def local_id_of(message: Any) -> str | None:
    try:
        value = _field(message, "id")
    except Exception:  # pragma: no cover - exotic inputs
        return None
    return str(value) if value not in (None, "") else None


def sender_of(message: Any) -> str:
    try:
        value = _field(message, "sender")
    except Exception:  # pragma: no cover - exotic inputs
        return Sender.USER
    return str(value) if value else Sender.USER


def content_of(message: Any) -> str:
    try:
        value = _field(message, "content")
    except Exception:  # pragma: no cover - exotic inputs
        return ""
    return "" if value is None else str(value)


def epoch_seconds(message: Any) -> float:
    """Timestamp as epoch seconds, ``0.0`` when absent or unreadable."""

    try:
        value = _field(message, "timestamp")
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return (value - _EPOCH).total_seconds()
        if isinstance(value, (int, float)):
            number = float(value)
            return number / 1000.0 if number > 1e11 else number
        if isinstance(value, str) and value:
            if value.isdigit():
                number = float(value)
                return number / 1000.0 if number > 1e11 else number
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return (parsed - _EPOCH).total_seconds()
    except Exception:
        return 0.0
    return 0.0


def strip_agent_header(content: str) -> str:
    """Remove the "name:" header agents' messages carry on the wire."""

    stripped = _BOLD_HEADER.sub("", content, count=1)
    if stripped == content:
        stripped = _PLAIN_HEADER.sub("", content, count=1)
    return stripped


def normalized_content(message: Any) -> str:
    content = content_of(message)
    if sender_of(message) == Sender.AGENT:
        content = strip_agent_header(content)
    return " ".join(content.split())


def key_of(message: Any) -> str:
    """Canonical identity of ``message``.

    Preference order: transport-native id, local id, then a generated key
    from sender, timestamp truncated to the second and truncated content.
    Never raises.
    """

    provider_id = provider_id_of(message)
    if provider_id:
        return f"provider:{provider_id}"
    local_id = local_id_of(message)
    if local_id:
        return f"local:{local_id}"
    content = normalized_content(message)[:GENERATED_CONTENT_LENGTH]
    return f"generated:{sender_of(message)}:{int(epoch_seconds(message))}:{content}"
