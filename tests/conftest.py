import inspect
import pathlib
import sys
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI, Request

sys.path.append(str(pathlib.Path(__file__).resolve().parents[1]))
from convosync.app_logging import init_logging
from convosync.config import SyncSettings
from convosync.conversations.models import Conversation, Message, Sender
from convosync.errors import ProviderError, StoreError
from convosync.providers.record_store import InMemoryRecordStore
from convosync.routing.prompts import render_confirmation

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
CONTACT = "5511999990000@s.whatsapp.net"


class Clock:
    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


def user_message(provider_id: str, text: str, at: datetime, **fields) -> Message:
    return Message(
        id=provider_id,
        sender=Sender.USER,
        content=text,
        timestamp=at,
        provider_message_id=provider_id,
        **fields,
    )


def agent_message(message_id: str, text: str, at: datetime, **fields) -> Message:
    return Message(id=message_id, sender=Sender.AGENT, content=text, timestamp=at, **fields)


class FakeStore(InMemoryRecordStore):
    """In-memory store that records writes and can be told to fail."""

    def __init__(self, records=None) -> None:
        super().__init__(records)
        self.status_writes: list[dict] = []
        self.record_writes: list[tuple[str, dict]] = []
        self.fail_loads = False
        self.fail_writes = False
        self.loads = 0

    async def load_snapshot(self, record_type):
        self.loads += 1
        if self.fail_loads:
            raise StoreError("store offline")
        return await super().load_snapshot(record_type)

    async def write_status(
        self, conversation_id, status, assigned_agent_id, department_id, **fields
    ):
        self.status_writes.append(
            {
                "conversation_id": conversation_id,
                "status": status,
                "assigned_agent_id": assigned_agent_id,
                "department_id": department_id,
                **fields,
            }
        )
        if self.fail_writes:
            raise StoreError("write rejected")
        return await super().write_status(
            conversation_id, status, assigned_agent_id, department_id, **fields
        )

    async def write_full_record(self, key, record):
        self.record_writes.append((key, record))
        if self.fail_writes:
            raise StoreError("write rejected")
        return await super().write_full_record(key, record)


class FakeProvider:
    """Provider double: serves canned chats/messages and records sends."""

    def __init__(self) -> None:
        self.chats: dict[str, Conversation] = {}
        self.messages: dict[str, list[Message]] = {}
        self.prompts: list[tuple[str, list[str]]] = []
        self.confirmations: list[tuple[str, str]] = []
        self.texts: list[tuple[str, str]] = []
        self.fail_sends = False
        self.fail_listing = False
        self.list_calls = 0

    def add_chat(self, conversation_id: str = CONTACT, name: str = "Maria") -> None:
        self.chats[conversation_id] = Conversation(
            id=conversation_id,
            contact_name=name,
            contact_number=conversation_id.split("@", 1)[0],
        )
        self.messages.setdefault(conversation_id, [])

    def deliver(self, conversation_id: str, message: Message) -> None:
        if conversation_id not in self.chats:
            self.add_chat(conversation_id)
        self.messages[conversation_id].append(message)

    async def list_conversations(self):
        self.list_calls += 1
        if self.fail_listing:
            raise ProviderError("provider unreachable", status_code=502)
        return list(self.chats.values())

    async def list_messages(self, conversation_id, limit):
        return list(self.messages.get(conversation_id, []))[-limit:]

    async def send_selection_prompt(self, contact_address, departments):
        self.prompts.append((contact_address, [d.name for d in departments]))
        return not self.fail_sends

    async def send_confirmation(self, contact_address, department_name, template):
        self.confirmations.append((contact_address, render_confirmation(template, department_name)))
        return not self.fail_sends

    async def send_text(self, contact_address, text):
        self.texts.append((contact_address, text))
        if self.fail_sends:
            return None
        return f"3EB0{len(self.texts):04d}"


class FakePushHandle:
    def __init__(self, fail: bool = False) -> None:
        self.handlers: dict[str, object] = {}
        self.fail = fail
        self.connected = False
        self.disconnects = 0

    def on(self, event, handler) -> None:
        self.handlers[event] = handler

    async def emit(self, event, *args):
        handler = self.handlers.get(event)
        if handler is None:
            return None
        result = handler(*args)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def connect(self) -> None:
        if self.fail:
            await self.emit("connect_error", "connection refused")
            raise ConnectionError("connection refused")
        self.connected = True
        await self.emit("connect")

    async def disconnect(self) -> None:
        self.disconnects += 1
        if self.connected:
            self.connected = False
            await self.emit("disconnect", "client disconnect")


class FakeConnector:
    """Hands out push handles; ``failures`` leading attempts are refused."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.handles: list[FakePushHandle] = []

    async def __call__(self) -> FakePushHandle:
        handle = FakePushHandle(fail=len(self.handles) < self.failures)
        self.handles.append(handle)
        return handle

    @property
    def current(self) -> FakePushHandle:
        return self.handles[-1]


def routing_records(chats=None) -> dict:
    return {
        "departments": {
            "d1": {"id": "d1", "name": "Sales", "color": "#0a0"},
            "d2": {"id": "d2", "name": "Support", "color": "#00a"},
        },
        "users": {
            "a1": {"id": "a1", "name": "Ana", "departmentIds": ["d1"]},
            "a2": {"id": "a2", "name": "Bruno", "departmentIds": ["d2"]},
            "a3": {"id": "a3", "name": "Carla", "departmentId": "d2"},
        },
        "chats": dict(chats or {}),
    }


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def settings() -> SyncSettings:
    return SyncSettings(
        provider_base_url="http://evolution.test",
        provider_instance="support",
        provider_api_key="evo-key",
        fast_refresh_interval=0.01,
        slow_refresh_interval=0.02,
        push_backoff_base=0.001,
        push_backoff_cap=0.004,
        batch_debounce=0.005,
        batch_max_wait=0.02,
        department_cache_ttl=0.0,
    )


@pytest.fixture
def store() -> FakeStore:
    return FakeStore(routing_records())


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def app_factory(monkeypatch):
    def _create_app(log_dir: str):
        """Create a FastAPI app with logging initialised."""
        monkeypatch.setenv("LOG_DIR", str(log_dir))
        app = FastAPI()

        @app.post("/echo")
        async def echo(request: Request):
            return await request.json()

        init_logging(app)
        return app

    return _create_app
