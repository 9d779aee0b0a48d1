"""Conversion between persisted key/value records and domain models.

The store keeps one JSON document per conversation using the camelCase keys
of the web client (``contactName``, ``assignedTo``, ``whatsappMessageId`` and
so on). These helpers are tolerant: unknown keys are ignored and missing keys
fall back to model defaults.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from ..errors import PayloadError
from .models import (
    Agent,
    Conversation,
    ConversationStatus,
    Department,
    Message,
    MessageStatus,
    Sender,
)

logger = logging.getLogger(__name__)

_STATUS_ALIASES = {
    "pending": MessageStatus.SENT,
    "server_ack": MessageStatus.SENT,
    "sent": MessageStatus.SENT,
    "delivery_ack": MessageStatus.DELIVERED,
    "delivered": MessageStatus.DELIVERED,
    "read": MessageStatus.READ,
    "played": MessageStatus.READ,
    "error": MessageStatus.ERROR,
}


def parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO strings, epoch seconds/milliseconds or datetimes into UTC."""

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, Mapping) and "low" in value:
        # protobuf Long as serialized by some provider builds
        value = value.get("low")
    if isinstance(value, (int, float)) or (isinstance(value, str) and value.isdigit()):
        try:
            number = float(value)
            if number > 1e11:
                number /= 1000.0
            return datetime.fromtimestamp(number, tz=timezone.utc)
        except (OverflowError, OSError, ValueError) as exc:
            raise PayloadError(f"Timestamp out of range {value!r}") from exc
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError as exc:
            raise PayloadError(f"Unrecognised timestamp {value!r}") from exc
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise PayloadError(f"Unrecognised timestamp {value!r}")


def normalize_message_status(value: Any) -> str:
    if value is None:
        return MessageStatus.SENT
    if isinstance(value, int):
        # numeric ack levels: 0 error, 1 pending, 2 server, 3 delivered, 4+ read
        if value <= 0:
            return MessageStatus.ERROR
        if value <= 2:
            return MessageStatus.SENT
        return MessageStatus.DELIVERED if value == 3 else MessageStatus.READ
    return _STATUS_ALIASES.get(str(value).strip().lower(), MessageStatus.SENT)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _optional_str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def message_from_record(record: Mapping[str, Any]) -> Message:
    """Build a :class:`Message` from a stored record."""

    if not isinstance(record, Mapping):
        raise PayloadError("Message record must be an object")
    timestamp = parse_timestamp(record.get("timestamp"))
    if timestamp is None:
        raise PayloadError("Message record has no timestamp")
    sender = record.get("sender") or Sender.USER
    if sender not in (Sender.USER, Sender.AGENT, Sender.SYSTEM):
        raise PayloadError(f"Unknown sender {sender!r}")
    provider_id = _optional_str(
        record.get("providerMessageId") or record.get("whatsappMessageId")
    )
    local_id = _optional_str(record.get("id")) or provider_id
    if local_id is None:
        raise PayloadError("Message record has no identity")
    raw = record.get("rawMessage")
    return Message(
        id=local_id,
        sender=sender,
        content=str(record.get("content") or ""),
        timestamp=timestamp,
        status=normalize_message_status(record.get("status")),
        type=str(record.get("type") or "text"),
        provider_message_id=provider_id,
        media_url=_optional_str(record.get("mediaUrl")),
        file_name=_optional_str(record.get("fileName")),
        mime_type=_optional_str(record.get("mimeType")),
        author=_optional_str(record.get("author")),
        raw=dict(raw) if isinstance(raw, Mapping) else None,
        marker=_optional_str(record.get("marker")),
    )


def message_to_record(message: Message) -> dict[str, Any]:
    record: dict[str, Any] = {
        "id": message.id,
        "content": message.content,
        "sender": message.sender,
        "timestamp": _iso(message.timestamp),
        "status": message.status,
        "type": message.type,
    }
    optional = {
        "whatsappMessageId": message.provider_message_id,
        "mediaUrl": message.media_url,
        "fileName": message.file_name,
        "mimeType": message.mime_type,
        "author": message.author,
        "rawMessage": message.raw,
        "marker": message.marker,
    }
    record.update({k: v for k, v in optional.items() if v is not None})
    return record


def _messages_from(records: Any) -> list[Message]:
    messages: list[Message] = []
    for item in records or []:
        try:
            messages.append(message_from_record(item))
        except PayloadError as exc:
            logger.warning("Skipping malformed stored message: %s", exc)
    return messages


def conversation_from_record(key: str, record: Mapping[str, Any]) -> Conversation:
    """Build a full :class:`Conversation` from a stored chat document."""

    status = record.get("status")
    if status not in ConversationStatus.ALL:
        status = ConversationStatus.PENDING
    conversation = Conversation(
        id=str(record.get("id") or key),
        contact_name=str(record.get("contactName") or ""),
        contact_number=str(record.get("contactNumber") or ""),
        contact_avatar=str(record.get("contactAvatar") or ""),
        client_code=_optional_str(record.get("clientCode")),
        tags=[str(t) for t in record.get("tags") or []],
        status=status,
        assigned_agent_id=_optional_str(record.get("assignedTo")),
        department_id=_optional_str(record.get("departmentId")),
        awaiting_department_selection=bool(record.get("awaitingDepartmentSelection")),
        department_selection_sent=bool(record.get("departmentSelectionSent")),
        awaiting_rating=bool(record.get("awaitingRating")),
        rating=_rating(record.get("rating")),
        ended_at=_safe_timestamp(record.get("endedAt")),
        last_message=str(record.get("lastMessage") or ""),
        last_message_time=_safe_timestamp(record.get("lastMessageTime")),
        unread_count=_count(record.get("unreadCount")),
        suppressed=_messages_from(record.get("suppressedMessages")),
    )
    messages = _messages_from(record.get("messages"))
    if messages:
        conversation = conversation.evolve(messages=messages)
    return conversation


def conversation_to_record(conversation: Conversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "contactName": conversation.contact_name,
        "contactNumber": conversation.contact_number,
        "contactAvatar": conversation.contact_avatar,
        "clientCode": conversation.client_code,
        "tags": list(conversation.tags),
        "departmentId": conversation.department_id,
        "unreadCount": conversation.unread_count,
        "lastMessage": conversation.last_message,
        "lastMessageTime": _iso(conversation.last_message_time),
        "status": conversation.status,
        "assignedTo": conversation.assigned_agent_id,
        "rating": conversation.rating,
        "endedAt": _iso(conversation.ended_at),
        "awaitingRating": conversation.awaiting_rating,
        "awaitingDepartmentSelection": conversation.awaiting_department_selection,
        "departmentSelectionSent": conversation.department_selection_sent,
        "messages": [message_to_record(m) for m in conversation.messages],
        "suppressedMessages": [message_to_record(m) for m in conversation.suppressed],
    }


def department_from_record(key: str, record: Mapping[str, Any]) -> Department:
    return Department(
        id=str(record.get("id") or key),
        name=str(record.get("name") or ""),
        description=str(record.get("description") or ""),
        color=str(record.get("color") or ""),
    )


def agent_from_record(key: str, record: Mapping[str, Any]) -> Agent:
    memberships = record.get("departmentIds")
    if memberships is None:
        single = record.get("departmentId")
        memberships = [single] if single else []
    return Agent(
        id=str(record.get("id") or key),
        name=str(record.get("name") or ""),
        department_ids=tuple(str(d) for d in memberships if d),
    )


def _rating(value: Any) -> int | None:
    try:
        rating = int(value)
    except (TypeError, ValueError):
        return None
    return rating if 1 <= rating <= 5 else None


def _count(value: Any) -> int:
    try:
        return max(int(value or 0), 0)
    except (TypeError, ValueError, OverflowError):
        return 0


def _safe_timestamp(value: Any) -> datetime | None:
    try:
        return parse_timestamp(value)
    except PayloadError:
        return None
