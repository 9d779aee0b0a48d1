"""Authoritative conversation snapshot loaded from the persistent store.

The store is the only source allowed to decide status, ownership and routing
fields. Whatever the refresh or push channels report, a conversation present
in the snapshot always ends up with the snapshot's values for
:data:`AUTHORITATIVE_FIELDS`.
"""

from __future__ import annotations

import dataclasses
import logging
from collections.abc import Iterator, Mapping
from datetime import datetime
from types import MappingProxyType
from typing import Any

from ..conversations.models import Conversation, ConversationStatus, utcnow
from ..conversations.records import parse_timestamp
from ..errors import PayloadError
from ..providers.base import RecordStore

logger = logging.getLogger(__name__)

AUTHORITATIVE_FIELDS = (
    "status",
    "assigned_agent_id",
    "department_id",
    "rating",
    "awaiting_rating",
    "awaiting_department_selection",
    "department_selection_sent",
    "ended_at",
)


@dataclasses.dataclass(frozen=True)
class AuthoritativeRecord:
    """Status, ownership and routing fields of one persisted conversation."""

    status: str = ConversationStatus.PENDING
    assigned_agent_id: str | None = None
    department_id: str | None = None
    rating: int | None = None
    awaiting_rating: bool = False
    awaiting_department_selection: bool = False
    department_selection_sent: bool = False
    ended_at: datetime | None = None

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "AuthoritativeRecord":
        if not isinstance(record, Mapping):
            raise PayloadError("Conversation record must be an object")
        status = record.get("status") or ConversationStatus.PENDING
        if status not in ConversationStatus.ALL:
            raise PayloadError(f"Unknown conversation status {status!r}")
        rating = record.get("rating")
        try:
            rating = int(rating) if rating is not None else None
        except (TypeError, ValueError) as exc:
            raise PayloadError(f"Invalid rating {rating!r}") from exc
        assigned = record.get("assignedTo", record.get("assignedAgentId"))
        department = record.get("departmentId")
        return cls(
            status=status,
            assigned_agent_id=str(assigned) if assigned else None,
            department_id=str(department) if department else None,
            rating=rating,
            awaiting_rating=bool(record.get("awaitingRating")),
            awaiting_department_selection=bool(record.get("awaitingDepartmentSelection")),
            department_selection_sent=bool(record.get("departmentSelectionSent")),
            ended_at=parse_timestamp(record.get("endedAt")),
        )

    @classmethod
    def from_conversation(cls, conversation: Conversation) -> "AuthoritativeRecord":
        return cls(**{name: getattr(conversation, name) for name in AUTHORITATIVE_FIELDS})

    def apply_to(self, conversation: Conversation) -> Conversation:
        changes = {
            name: getattr(self, name)
            for name in AUTHORITATIVE_FIELDS
            if getattr(conversation, name) != getattr(self, name)
        }
        if not changes:
            return conversation
        return dataclasses.replace(conversation, **changes)


class AuthoritativeSnapshot(Mapping[str, AuthoritativeRecord]):
    """Immutable index of authoritative records keyed by conversation id."""

    def __init__(
        self,
        records: Mapping[str, AuthoritativeRecord] | None = None,
        documents: Mapping[str, Mapping[str, Any]] | None = None,
        loaded_at: datetime | None = None,
    ) -> None:
        self._records = MappingProxyType(dict(records or {}))
        self._documents = MappingProxyType(dict(documents or {}))
        self.loaded_at = loaded_at

    def __getitem__(self, key: str) -> AuthoritativeRecord:
        return self._records[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._records)

    def __len__(self) -> int:
        return len(self._records)

    def document(self, key: str) -> Mapping[str, Any] | None:
        """Full stored document for ``key`` (used to seed unseen conversations)."""

        return self._documents.get(key)

    def with_record(self, key: str, record: AuthoritativeRecord) -> "AuthoritativeSnapshot":
        records = dict(self._records)
        records[key] = record
        return AuthoritativeSnapshot(records, self._documents, self.loaded_at)


def apply_snapshot(
    conversation: Conversation, snapshot: Mapping[str, AuthoritativeRecord]
) -> Conversation:
    """Overlay the authoritative fields of ``snapshot`` onto ``conversation``."""

    record = snapshot.get(conversation.id)
    if record is None:
        return conversation
    return record.apply_to(conversation)


class SnapshotLoader:
    """Bulk-loads persisted conversations and keeps the latest good index."""

    def __init__(self, store: RecordStore, record_type: str = "chats") -> None:
        self._store = store
        self._record_type = record_type
        self._current = AuthoritativeSnapshot()

    @property
    def current(self) -> AuthoritativeSnapshot:
        return self._current

    async def load(self) -> AuthoritativeSnapshot:
        """Fetch a fresh snapshot; on failure keep serving the previous one."""

        try:
            raw = await self._store.load_snapshot(self._record_type)
        except Exception as exc:
            logger.warning(
                "Snapshot load for %s failed, keeping previous index (%d records): %s",
                self._record_type,
                len(self._current),
                exc,
            )
            return self._current

        records: dict[str, AuthoritativeRecord] = {}
        documents: dict[str, Mapping[str, Any]] = {}
        for key, document in (raw or {}).items():
            try:
                record = AuthoritativeRecord.from_record(document)
            except PayloadError as exc:
                logger.warning("Skipping malformed %s record %s: %s", self._record_type, key, exc)
                continue
            conversation_id = str(document.get("id") or key)
            records[conversation_id] = record
            documents[conversation_id] = document
        self._current = AuthoritativeSnapshot(records, documents, loaded_at=utcnow())
        logger.debug("Loaded %d authoritative %s records", len(records), self._record_type)
        return self._current

    def record_write(self, conversation: Conversation) -> None:
        """Reflect a successful authoritative write into the current index."""

        self._current = self._current.with_record(
            conversation.id, AuthoritativeRecord.from_conversation(conversation)
        )
