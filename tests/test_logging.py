import json
import logging
from logging.handlers import TimedRotatingFileHandler

import pytest
from fastapi import FastAPI
from starlette.testclient import TestClient

from convosync.app_logging import APP_LOGGER_NAME, LogConfig, init_logging, scrub


def _clear_handlers(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    return logger


@pytest.fixture
def log_dir(monkeypatch, tmp_path):
    monkeypatch.setenv("LOG_DIR", str(tmp_path))
    _clear_handlers(APP_LOGGER_NAME)
    _clear_handlers("uvicorn.access")
    yield tmp_path
    _clear_handlers(APP_LOGGER_NAME)
    _clear_handlers("uvicorn.access")


def test_timed_rotating_handler_configuration(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_RETENTION_DAYS", "5")

    init_logging()

    for name in (APP_LOGGER_NAME, "uvicorn.access"):
        handler = next(
            h for h in logging.getLogger(name).handlers if isinstance(h, TimedRotatingFileHandler)
        )
        assert handler.when == "MIDNIGHT"
        assert handler.backupCount == 5


def test_init_logging_replaces_existing_access_handlers(log_dir):
    access_logger = logging.getLogger("uvicorn.access")
    stream_handler = logging.StreamHandler()
    access_logger.addHandler(stream_handler)

    init_logging(FastAPI())

    assert stream_handler not in access_logger.handlers
    assert any(isinstance(h, TimedRotatingFileHandler) for h in access_logger.handlers)


def test_engine_modules_log_to_app_file(log_dir):
    init_logging()

    logging.getLogger("convosync.sync.engine").warning("snapshot load failed")
    for handler in logging.getLogger(APP_LOGGER_NAME).handlers:
        handler.flush()

    assert "snapshot load failed" in (log_dir / "app.log").read_text()


def test_access_log_scrubs_credentials(log_dir, app_factory):
    app = app_factory(log_dir)

    with TestClient(app) as client:
        resp = client.post(
            "/echo",
            json={"value": 1},
            headers={"apikey": "evo-key", "Authorization": "Bearer secret"},
        )
        assert resp.status_code == 200
        assert resp.headers["X-Request-Id"]

    for handler in logging.getLogger("uvicorn.access").handlers:
        handler.flush()

    access_line = (log_dir / "access.log").read_text().splitlines()[-1]
    data = json.loads(access_line.split(": ", 1)[1])
    assert data["path"] == "/echo"
    assert data["headers"]["apikey"] == "***"
    assert data["headers"]["authorization"] == "***"


def test_scrub_is_recursive():
    payload = {"apikey": "k", "data": [{"token": "t", "text": "hello"}]}
    assert scrub(payload) == {"apikey": "***", "data": [{"token": "***", "text": "hello"}]}


def test_access_log_scrubs_query_and_skips_health(log_dir):
    app = FastAPI()

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    @app.post("/api/webhooks/evolution")
    async def webhook():
        return {"queued": 0}

    init_logging(app)

    with TestClient(app) as client:
        client.get("/api/health")
        client.post("/api/webhooks/evolution", params={"apikey": "evo-key", "instance": "support"})

    for handler in logging.getLogger("uvicorn.access").handlers:
        handler.flush()

    lines = (log_dir / "access.log").read_text().splitlines()
    assert len(lines) == 1
    data = json.loads(lines[0].split(": ", 1)[1])
    assert data["query"] == {"apikey": "***", "instance": "support"}


def test_log_config_from_env(monkeypatch):
    monkeypatch.setenv("LOG_LEVEL", "debug")
    monkeypatch.setenv("LOG_JSON", "true")
    monkeypatch.delenv("LOG_RETENTION_DAYS", raising=False)

    config = LogConfig.from_env()

    assert config.level == logging.DEBUG
    assert config.json is True
    assert config.retention_days == 7
