"""Key/value record stores holding the authoritative conversation documents.

Records are grouped by type (``chats``, ``departments``, ``users``) and keyed
by id. :class:`HttpRecordStore` talks to the ``/api/data/{type}`` endpoints of
the web backend; :class:`InMemoryRecordStore` keeps everything in process and
is used when no backend is configured.
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections.abc import Mapping
from typing import Any
from urllib.parse import quote

import requests

from ..config import SyncSettings
from ..errors import StoreError

logger = logging.getLogger(__name__)


def apply_status_fields(
    record: Mapping[str, Any] | None,
    conversation_id: str,
    status: str,
    assigned_agent_id: str | None,
    department_id: str | None,
    display_name: str | None = None,
    avatar: str | None = None,
    awaiting_department_selection: bool | None = None,
    department_selection_sent: bool | None = None,
    reopened: bool = False,
) -> dict[str, Any]:
    """Return a copy of ``record`` with the status/ownership fields replaced."""

    updated = dict(record or {})
    updated.setdefault("id", conversation_id)
    updated["status"] = status
    updated["assignedTo"] = assigned_agent_id
    updated["departmentId"] = department_id
    if display_name is not None:
        updated["contactName"] = display_name
    if avatar is not None:
        updated["contactAvatar"] = avatar
    if awaiting_department_selection is not None:
        updated["awaitingDepartmentSelection"] = awaiting_department_selection
    if department_selection_sent is not None:
        updated["departmentSelectionSent"] = department_selection_sent
    if reopened:
        updated["endedAt"] = None
        updated["awaitingRating"] = False
    return updated


def _records_from(data: Any) -> dict[str, dict[str, Any]]:
    if isinstance(data, Mapping) and isinstance(data.get("data"), (Mapping, list)):
        data = data["data"]
    if isinstance(data, list):
        # [{"key": ..., "value": {...}}, ...]
        data = {
            str(item.get("key")): item.get("value")
            for item in data
            if isinstance(item, Mapping) and item.get("key") is not None
        }
    if not isinstance(data, Mapping):
        raise StoreError("Unexpected record listing format")
    return {str(key): dict(value) for key, value in data.items() if isinstance(value, Mapping)}


class HttpRecordStore:
    """``requests`` client for the web backend's generic data endpoints."""

    def __init__(
        self,
        base_url: str,
        token: str = "",
        *,
        chat_record_type: str = "chats",
        timeout: float = 15.0,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.chat_record_type = chat_record_type
        self.timeout = timeout
        self._session = session or requests.Session()
        if token:
            self._session.headers["Authorization"] = f"Bearer {token}"
        self._cache: dict[str, dict[str, dict[str, Any]]] = {}

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "HttpRecordStore":
        return cls(
            settings.store_base_url,
            settings.store_token,
            chat_record_type=settings.chat_record_type,
            timeout=settings.request_timeout,
        )

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise StoreError(f"{method} {path} failed: {exc}") from exc
        if response.status_code == 404 and method == "PUT":
            return None
        if response.status_code >= 400:
            raise StoreError(f"{method} {path} returned {response.status_code}")
        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as exc:
            raise StoreError(f"{method} {path} returned invalid JSON") from exc

    def _put(self, record_type: str, key: str, record: dict[str, Any]) -> bool:
        collection = f"/api/data/{quote(record_type, safe='')}"
        if self._request("PUT", f"{collection}/{quote(key, safe='')}", {"value": record}) is None:
            # unknown key: create it
            self._request("POST", collection, {"key": key, "value": record})
        self._cache.setdefault(record_type, {})[key] = record
        return True

    async def load_snapshot(self, record_type: str) -> dict[str, dict[str, Any]]:
        data = await asyncio.to_thread(
            self._request, "GET", f"/api/data/{quote(record_type, safe='')}"
        )
        records = _records_from(data)
        self._cache[record_type] = records
        return copy.deepcopy(records)

    async def write_status(
        self,
        conversation_id: str,
        status: str,
        assigned_agent_id: str | None,
        department_id: str | None,
        display_name: str | None = None,
        avatar: str | None = None,
        awaiting_department_selection: bool | None = None,
        department_selection_sent: bool | None = None,
        reopened: bool = False,
    ) -> bool:
        cached = self._cache.get(self.chat_record_type, {}).get(conversation_id)
        record = apply_status_fields(
            cached,
            conversation_id,
            status,
            assigned_agent_id,
            department_id,
            display_name,
            avatar,
            awaiting_department_selection,
            department_selection_sent,
            reopened,
        )
        return await asyncio.to_thread(self._put, self.chat_record_type, conversation_id, record)

    async def write_full_record(self, key: str, record: dict[str, Any]) -> bool:
        return await asyncio.to_thread(self._put, self.chat_record_type, key, dict(record))


class InMemoryRecordStore:
    """Process-local store; ``records[type][key]`` holds plain dicts."""

    def __init__(
        self,
        records: Mapping[str, Mapping[str, Mapping[str, Any]]] | None = None,
        *,
        chat_record_type: str = "chats",
    ) -> None:
        self.chat_record_type = chat_record_type
        self.records: dict[str, dict[str, dict[str, Any]]] = {
            record_type: {key: dict(value) for key, value in entries.items()}
            for record_type, entries in (records or {}).items()
        }

    def put(self, record_type: str, key: str, record: Mapping[str, Any]) -> None:
        self.records.setdefault(record_type, {})[key] = dict(record)

    async def load_snapshot(self, record_type: str) -> dict[str, dict[str, Any]]:
        return copy.deepcopy(self.records.get(record_type, {}))

    async def write_status(
        self,
        conversation_id: str,
        status: str,
        assigned_agent_id: str | None,
        department_id: str | None,
        display_name: str | None = None,
        avatar: str | None = None,
        awaiting_department_selection: bool | None = None,
        department_selection_sent: bool | None = None,
        reopened: bool = False,
    ) -> bool:
        chats = self.records.setdefault(self.chat_record_type, {})
        chats[conversation_id] = apply_status_fields(
            chats.get(conversation_id),
            conversation_id,
            status,
            assigned_agent_id,
            department_id,
            display_name,
            avatar,
            awaiting_department_selection,
            department_selection_sent,
            reopened,
        )
        return True

    async def write_full_record(self, key: str, record: dict[str, Any]) -> bool:
        self.put(self.chat_record_type, key, copy.deepcopy(record))
        return True
