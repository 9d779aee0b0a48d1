import logging
import time

import pytest
from conftest import CONTACT, NOW, FakeConnector, user_message
from fastapi.testclient import TestClient

from convosync.__version__ import __version__
from convosync.main import create_app
from convosync.sync.engine import ReconciliationEngine


@pytest.fixture
def connector():
    return FakeConnector()


@pytest.fixture
def engine(store, provider, settings, clock, connector):
    provider.deliver(CONTACT, user_message("P1", "Hello", NOW))
    return ReconciliationEngine(
        store, provider, settings=settings, clock=clock, connector=connector
    )


@pytest.fixture
def client(engine, monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    app = create_app(lambda: engine, autostart=True)
    with TestClient(app) as test_client:
        yield test_client


def _wait_for(client, path, predicate, timeout=1.0):
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(path).json()
        if predicate(body) or time.monotonic() > deadline:
            return body
        time.sleep(0.01)


def test_health_and_version(client):
    assert client.get("/api/health").json() == {"status": "ok"}
    version = client.get("/api/version").json()
    assert version["version"] == __version__
    assert "commit_sha" in version


def test_engine_missing_returns_503(engine, monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    app = create_app(lambda: engine, autostart=False)
    # without the lifespan no engine is installed
    resp = TestClient(app).get("/api/conversations")
    assert resp.status_code == 503


def test_disabled_autostart_is_logged_as_such(engine, monkeypatch, tmp_path, caplog):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    app = create_app(lambda: engine, autostart=False)

    with caplog.at_level(logging.INFO, logger="convosync.main"):
        with TestClient(app) as test_client:
            assert test_client.get("/api/sync/status").json()["primed"] is False

    assert "autostart disabled" in caplog.text
    assert "base URL" not in caplog.text


def test_list_and_get_conversations(client):
    listing = client.get("/api/conversations").json()
    assert listing["total"] == 1
    assert listing["items"][0]["id"] == CONTACT
    assert listing["items"][0]["contact_name"] == "Maria"
    assert "messages" not in listing["items"][0]

    assert client.get("/api/conversations", params={"status": "closed"}).json()["total"] == 0

    detail = client.get(f"/api/conversations/{CONTACT}").json()
    assert [m["id"] for m in detail["messages"]] == ["P1"]
    assert detail["messages"][0]["sender"] == "user"

    missing = client.get("/api/conversations/unknown")
    assert missing.status_code == 404
    assert "unknown" in missing.json()["detail"]


def test_sync_status_and_reconnect(client, connector):
    status = client.get("/api/sync/status").json()
    assert status["push_state"] == "connected"
    assert status["push_configured"] is True
    assert status["primed"] is True
    assert status["conversations"] == 1

    resp = client.post("/api/sync/reconnect")
    assert resp.status_code == 200
    assert resp.json()["push_state"] == "connected"
    assert len(connector.handles) == 2


def test_agent_actions(client, store):
    url = f"/api/conversations/{CONTACT}"

    assigned = client.post(f"{url}/assign", json={"agent_id": "a1"})
    assert assigned.status_code == 200
    assert assigned.json()["status"] == "open"
    assert assigned.json()["assigned_agent_id"] == "a1"

    assert client.post(f"{url}/transfer", json={"department_id": "d9"}).status_code == 404
    moved = client.post(f"{url}/transfer", json={"department_id": "d1"}).json()
    assert moved["department_id"] == "d1"
    assert moved["status"] == "pending"

    assert client.post(f"{url}/pending").json()["status"] == "pending"

    closed = client.post(f"{url}/close", json={"with_survey": True}).json()
    assert closed["status"] == "closed"
    assert closed["awaiting_rating"] is True
    assert store.records["chats"][CONTACT]["status"] == "closed"

    assert client.post("/api/conversations/nope/close", json={}).status_code == 404


def test_send_agent_message(client, provider):
    resp = client.post(
        f"/api/conversations/{CONTACT}/messages",
        json={"text": "On it", "agent_name": "Bruno", "department_name": "Support"},
    )

    assert resp.status_code == 201
    body = resp.json()
    assert body["sender"] == "agent"
    assert body["provider_message_id"] == "3EB00001"
    assert body["status"] == "sent"
    assert provider.texts == [("5511999990000", "*Bruno - Support*:\nOn it")]


def test_send_agent_message_validation(client):
    url = f"/api/conversations/{CONTACT}/messages"
    assert client.post(url, json={"text": "", "agent_name": "Bruno"}).status_code == 422
    assert (
        client.post(url, json={"text": "hi", "agent_name": "Bruno", "extra": 1}).status_code
        == 422
    )


def test_webhook_upsert_is_queued_and_applied(client):
    other = "5511777770000@s.whatsapp.net"
    resp = client.post(
        "/api/webhooks/evolution",
        json={
            "event": "messages.upsert",
            "instance": "support",
            "apikey": "evo-key",
            "data": {
                "key": {"remoteJid": other, "id": "Q1", "fromMe": False},
                "pushName": "Joana",
                "messageTimestamp": int(NOW.timestamp()),
                "message": {"conversation": "Oi"},
            },
        },
    )

    assert resp.status_code == 202
    assert resp.json() == {"event": "messages.upsert", "queued": 1}
    detail = _wait_for(client, f"/api/conversations/{other}", lambda body: "messages" in body)
    assert detail["contact_name"] == "Joana"
    assert [m["id"] for m in detail["messages"] if m["sender"] == "user"] == ["Q1"]


def test_webhook_status_update_by_event_path(client):
    resp = client.post(
        "/api/webhooks/evolution/messages-update",
        json={"data": {"keyId": "P1", "remoteJid": CONTACT, "status": "READ"}},
        headers={"apikey": "evo-key"},
    )

    assert resp.status_code == 202
    assert resp.json()["event"] == "messages.update"
    detail = client.get(f"/api/conversations/{CONTACT}").json()
    assert detail["messages"][0]["status"] == "read"


def test_webhook_ignores_other_events(client):
    resp = client.post(
        "/api/webhooks/evolution", json={"event": "CONNECTION_UPDATE", "apikey": "evo-key"}
    )
    assert resp.status_code == 202
    assert resp.json() == {"event": "connection.update", "queued": 0}


def test_webhook_rejects_bad_payloads(client):
    url = "/api/webhooks/evolution"
    bad_json = client.post(
        url, content=b"{not json", headers={"Content-Type": "application/json"}
    )
    assert bad_json.status_code == 400
    assert client.post(url, json=[1, 2]).status_code == 400
    wrong_key = client.post(url, json={"event": "messages.upsert", "apikey": "wrong"})
    assert wrong_key.status_code == 401


def test_webhook_requires_apikey_when_configured(client):
    upsert = {
        "event": "messages.upsert",
        "data": {
            "key": {"remoteJid": CONTACT, "id": "F1", "fromMe": False},
            "messageTimestamp": int(NOW.timestamp()),
            "message": {"conversation": "forged"},
        },
    }

    resp = client.post("/api/webhooks/evolution", json=upsert)

    assert resp.status_code == 401
    detail = client.get(f"/api/conversations/{CONTACT}").json()
    assert all(m["id"] != "F1" for m in detail["messages"])
