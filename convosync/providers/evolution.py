"""Evolution API (WhatsApp) client and payload parsing."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any

import requests

from ..config import DEFAULT_PROMPT_HEADER, SyncSettings
from ..conversations.models import Conversation, Department, Message, Sender
from ..conversations.records import normalize_message_status, parse_timestamp
from ..errors import PayloadError, ProviderError
from ..routing.prompts import render_confirmation, render_selection_prompt

logger = logging.getLogger(__name__)

_WRAPPER_KEYS = ("data", "messages", "records", "items", "chats")

_MEDIA_TYPES = {
    "imageMessage": "image",
    "videoMessage": "video",
    "audioMessage": "audio",
    "documentMessage": "document",
    "documentWithCaptionMessage": "document",
    "stickerMessage": "sticker",
}

_IGNORED_JIDS = {"status@broadcast"}


def flatten_payload(payload: Any) -> list[dict[str, Any]]:
    """Normalise a single item, an array or a nested wrapper into a flat list.

    Anything that is not an object is dropped (and logged) without affecting
    the other items of the payload.
    """

    if payload is None:
        return []
    if isinstance(payload, (list, tuple)):
        items: list[dict[str, Any]] = []
        for entry in payload:
            items.extend(flatten_payload(entry))
        return items
    if not isinstance(payload, Mapping):
        logger.warning("Skipping provider item of type %s", type(payload).__name__)
        return []
    if "key" in payload or "keyId" in payload or "remoteJid" in payload:
        return [dict(payload)]
    for wrapper in _WRAPPER_KEYS:
        inner = payload.get(wrapper)
        if isinstance(inner, (list, tuple, Mapping)):
            return flatten_payload(inner)
    return [dict(payload)]


def _key(raw: Mapping[str, Any]) -> Mapping[str, Any]:
    key = raw.get("key")
    return key if isinstance(key, Mapping) else {}


def remote_jid_of(raw: Mapping[str, Any]) -> str | None:
    """Conversation address of a message event."""

    key = _key(raw)
    jid = key.get("remoteJid") or key.get("remoteJidAlt") or raw.get("remoteJid")
    if not jid or jid in _IGNORED_JIDS:
        return None
    return str(jid)


def number_from_jid(jid: str) -> str:
    if jid.endswith("@g.us"):
        return jid
    return "".join(ch for ch in jid.split("@", 1)[0] if ch.isdigit())


def _content_of(message: Mapping[str, Any]) -> tuple[str, str, dict[str, str | None]]:
    if message.get("conversation"):
        return "text", str(message["conversation"]), {}
    extended = message.get("extendedTextMessage")
    if isinstance(extended, Mapping) and extended.get("text"):
        return "text", str(extended["text"]), {}
    for field, kind in _MEDIA_TYPES.items():
        media = message.get(field)
        if not isinstance(media, Mapping):
            continue
        if field == "documentWithCaptionMessage":
            media = (media.get("message") or {}).get("documentMessage") or media
        return (
            kind,
            str(media.get("caption") or ""),
            {
                "media_url": media.get("url") or media.get("mediaUrl"),
                "file_name": media.get("fileName"),
                "mime_type": media.get("mimetype"),
            },
        )
    buttons = message.get("buttonsResponseMessage")
    if isinstance(buttons, Mapping):
        return "text", str(buttons.get("selectedDisplayText") or ""), {}
    listed = message.get("listResponseMessage")
    if isinstance(listed, Mapping):
        return "text", str(listed.get("title") or ""), {}
    return "text", "", {}


def message_from_provider(raw: Mapping[str, Any]) -> Message:
    """Convert one Evolution message record (REST or event) into a Message."""

    if not isinstance(raw, Mapping):
        raise PayloadError("Provider message must be an object")
    key = _key(raw)
    provider_id = key.get("id") or raw.get("keyId")
    if not provider_id:
        raise PayloadError("Provider message has no id")
    timestamp = parse_timestamp(raw.get("messageTimestamp") or raw.get("timestamp"))
    if timestamp is None:
        raise PayloadError(f"Provider message {provider_id} has no timestamp")
    body = raw.get("message")
    kind, text, media = _content_of(body if isinstance(body, Mapping) else {})
    from_me = bool(key.get("fromMe", raw.get("fromMe")))
    media_url = raw.get("mediaUrl") or media.get("media_url")
    return Message(
        id=str(provider_id),
        sender=Sender.AGENT if from_me else Sender.USER,
        content=text,
        timestamp=timestamp,
        status=normalize_message_status(raw.get("status")),
        type=kind,
        provider_message_id=str(provider_id),
        media_url=str(media_url) if media_url else None,
        file_name=media.get("file_name"),
        mime_type=media.get("mime_type"),
        author=None if from_me else (raw.get("pushName") or None),
        raw=dict(raw),
    )


def summary_from_event(raw: Mapping[str, Any]) -> Conversation | None:
    jid = remote_jid_of(raw)
    if jid is None:
        return None
    from_me = bool(_key(raw).get("fromMe"))
    return Conversation(
        id=jid,
        contact_name="" if from_me else str(raw.get("pushName") or ""),
        contact_number=number_from_jid(jid),
    )


def conversation_from_chat(raw: Mapping[str, Any]) -> Conversation:
    """Conversation summary from a ``findChats`` entry (no messages)."""

    if not isinstance(raw, Mapping):
        raise PayloadError("Chat entry must be an object")
    jid = raw.get("remoteJid") or raw.get("id")
    if not jid or not isinstance(jid, str) or "@" not in jid:
        raise PayloadError(f"Chat entry has no address: {jid!r}")
    number = number_from_jid(jid)
    try:
        unread = int(raw.get("unreadCount") or raw.get("unreadMessages") or 0)
    except (TypeError, ValueError):
        unread = 0
    return Conversation(
        id=jid,
        contact_name=str(raw.get("pushName") or raw.get("name") or number),
        contact_number=number,
        contact_avatar=str(raw.get("profilePicUrl") or raw.get("profilePictureUrl") or ""),
        unread_count=unread,
    )


def status_update_of(raw: Mapping[str, Any]) -> tuple[str | None, str, str]:
    """``(conversation_id, provider_message_id, status)`` of a delivery update."""

    if not isinstance(raw, Mapping):
        raise PayloadError("Status update must be an object")
    key = _key(raw)
    provider_id = raw.get("keyId") or key.get("id") or raw.get("messageId")
    status = raw.get("status")
    update = raw.get("update")
    if isinstance(update, Mapping) and update.get("status") is not None:
        status = update["status"]
    if not provider_id or status is None:
        raise PayloadError("Status update without message id or status")
    return remote_jid_of(raw), str(provider_id), normalize_message_status(status)


class EvolutionClient:
    """Blocking ``requests`` client; every public coroutine runs it off-loop."""

    def __init__(
        self,
        base_url: str,
        instance: str,
        api_key: str,
        *,
        timeout: float = 15.0,
        conversation_limit: int = 100,
        prompt_header: str = DEFAULT_PROMPT_HEADER,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.instance = instance
        self.timeout = timeout
        self.conversation_limit = conversation_limit
        self.prompt_header = prompt_header
        self._session = session or requests.Session()
        self._session.headers.update({"apikey": api_key, "Content-Type": "application/json"})

    @classmethod
    def from_settings(cls, settings: SyncSettings) -> "EvolutionClient":
        return cls(
            settings.provider_base_url,
            settings.provider_instance,
            settings.provider_api_key,
            timeout=settings.request_timeout,
            conversation_limit=settings.conversation_fetch_limit,
            prompt_header=settings.prompt_header,
        )

    def _request(self, method: str, path: str, payload: dict[str, Any] | None = None) -> Any:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(method, url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            raise ProviderError(f"{method} {path} failed: {exc}") from exc
        if response.status_code >= 400:
            raise ProviderError(
                f"{method} {path} returned {response.status_code}",
                status_code=response.status_code,
            )
        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise ProviderError(f"{method} {path} returned invalid JSON") from exc

    async def list_conversations(self) -> list[Conversation]:
        data = await asyncio.to_thread(
            self._request, "POST", f"/chat/findChats/{self.instance}", {}
        )
        conversations: list[Conversation] = []
        for entry in flatten_payload(data):
            try:
                conversations.append(conversation_from_chat(entry))
            except PayloadError as exc:
                logger.debug("Skipping chat entry: %s", exc)
        return conversations[: self.conversation_limit]

    async def list_messages(self, conversation_id: str, limit: int) -> list[Message]:
        payload = {"where": {"key": {"remoteJid": conversation_id}}, "limit": limit}
        data = await asyncio.to_thread(
            self._request, "POST", f"/chat/findMessages/{self.instance}", payload
        )
        messages: list[Message] = []
        for entry in flatten_payload(data):
            try:
                messages.append(message_from_provider(entry))
            except PayloadError as exc:
                logger.warning("Skipping malformed message in %s: %s", conversation_id, exc)
        messages.sort(key=lambda m: m.timestamp)
        return messages[-limit:] if limit else messages

    async def send_text(self, contact_address: str, text: str) -> str | None:
        payload = {
            "number": number_from_jid(contact_address),
            "text": text,
            "textMessage": {"text": text},
        }
        try:
            data = await asyncio.to_thread(
                self._request, "POST", f"/message/sendText/{self.instance}", payload
            )
        except ProviderError as exc:
            logger.warning("Sending to %s failed: %s", contact_address, exc)
            return None
        key = (data or {}).get("key") if isinstance(data, Mapping) else None
        if isinstance(key, Mapping) and key.get("id"):
            return str(key["id"])
        return ""

    async def send_selection_prompt(
        self, contact_address: str, departments: Sequence[Department]
    ) -> bool:
        text = render_selection_prompt(departments, self.prompt_header)
        return await self.send_text(contact_address, text) is not None

    async def send_confirmation(
        self, contact_address: str, department_name: str, template: str
    ) -> bool:
        text = render_confirmation(template, department_name)
        return await self.send_text(contact_address, text) is not None
