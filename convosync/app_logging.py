"""Logging for the sync service.

Two rotating files are written under ``LOG_DIR``:

- ``app.log`` for everything below the ``convosync`` logger (engine, push and
  refresh channels, provider and store clients);
- ``access.log`` for the HTTP API, one JSON line per request.

Provider webhooks carry the Evolution instance key in headers, query strings
and bodies, so access lines are passed through :func:`scrub` before they are
written.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_RETENTION_DAYS,
LOG_ROTATE_UTC.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import time
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request

APP_LOGGER_NAME = "convosync"
ACCESS_LOGGER_NAME = "uvicorn.access"

SENSITIVE_FIELDS = {
    "apikey",
    "api_key",
    "authorization",
    "cookie",
    "set-cookie",
    "token",
    "access_token",
}

# polled constantly by orchestrators
_QUIET_PATHS = {"/api/health"}


@dataclasses.dataclass(frozen=True)
class LogConfig:
    log_dir: str = "logs"
    level: int = logging.INFO
    json: bool = False
    retention_days: int = 7
    rotate_utc: bool = False

    @classmethod
    def from_env(cls) -> "LogConfig":
        level_name = os.getenv("LOG_LEVEL", "INFO").upper()
        return cls(
            log_dir=os.getenv("LOG_DIR", "logs"),
            level=getattr(logging, level_name, logging.INFO),
            json=os.getenv("LOG_JSON", "false").lower() == "true",
            retention_days=int(os.getenv("LOG_RETENTION_DAYS", "7")),
            rotate_utc=os.getenv("LOG_ROTATE_UTC", "false").lower() == "true",
        )


class JsonFormatter(logging.Formatter):
    """One JSON object per record; used when LOG_JSON=true."""

    def format(self, record: logging.LogRecord) -> str:  # pragma: no cover - simple
        entry = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        conversation_id = getattr(record, "conversation_id", None)
        if conversation_id:
            entry["conversation_id"] = conversation_id
        if record.exc_info:
            entry["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(entry)


def _formatter(config: LogConfig) -> logging.Formatter:
    if config.json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def scrub(data: object) -> object:
    """Mask credential-looking keys anywhere in nested dicts and lists."""

    if isinstance(data, dict):
        return {
            key: ("***" if str(key).lower() in SENSITIVE_FIELDS else scrub(value))
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [scrub(value) for value in data]
    return data


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client is not None else None


def _install_access_logging(app: FastAPI) -> None:
    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in _QUIET_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()
        response = await call_next(request)
        elapsed_ms = (time.perf_counter() - started) * 1000

        entry: dict[str, Any] = {
            "request_id": request_id,
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "latency_ms": round(elapsed_ms, 2),
            "client_ip": _client_ip(request),
            "headers": scrub(dict(request.headers)),
        }
        if request.query_params:
            entry["query"] = scrub(dict(request.query_params))
        conversation_id = request.scope.get("path_params", {}).get("conversation_id")
        if conversation_id:
            entry["conversation_id"] = conversation_id
        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(entry, default=str))
        return response


def _file_handler(config: LogConfig, filename: str) -> TimedRotatingFileHandler:
    handler = TimedRotatingFileHandler(
        os.path.join(config.log_dir, filename),
        when="midnight",
        backupCount=config.retention_days,
        utc=config.rotate_utc,
    )
    handler.setFormatter(_formatter(config))
    return handler


def init_logging(app: FastAPI | None = None, config: LogConfig | None = None) -> None:
    """Attach the rotating handlers and, given an app, the access middleware."""

    config = config or LogConfig.from_env()
    os.makedirs(config.log_dir, exist_ok=True)

    app_logger = logging.getLogger(APP_LOGGER_NAME)
    if not app_logger.handlers:
        app_logger.addHandler(_file_handler(config, "app.log"))
    app_logger.setLevel(config.level)

    # uvicorn installs its own stream handler; the file replaces it
    access_logger = logging.getLogger(ACCESS_LOGGER_NAME)
    access_logger.handlers.clear()
    access_logger.addHandler(_file_handler(config, "access.log"))
    access_logger.setLevel(config.level)

    if app is not None:
        cast(Any, app).logger = app_logger
        _install_access_logging(app)
