"""Runtime configuration for the reconciliation engine."""

from __future__ import annotations

import dataclasses
import os
from functools import lru_cache

from dotenv import load_dotenv

DEFAULT_CONFIRMATION_TEMPLATE = (
    "You are now talking to the {department} team. An agent will be with you shortly."
)
DEFAULT_PROMPT_HEADER = "Hello! Please reply with the number of the department you want to talk to:"
DEFAULT_SURVEY_TEXT = "Please rate our service from 1 to 5 stars."


@dataclasses.dataclass(frozen=True)
class SyncSettings:
    """Connection details and timing knobs for one engine instance."""

    provider_base_url: str = ""
    provider_instance: str = ""
    provider_api_key: str = ""
    store_base_url: str = ""
    store_token: str = ""
    chat_record_type: str = "chats"
    department_record_type: str = "departments"
    agent_record_type: str = "users"
    fast_refresh_interval: float = 1.0
    slow_refresh_interval: float = 2.0
    message_fetch_limit: int = 50
    conversation_fetch_limit: int = 100
    push_max_attempts: int = 5
    push_backoff_base: float = 1.0
    push_backoff_cap: float = 5.0
    batch_debounce: float = 0.025
    batch_max_wait: float = 0.1
    department_cache_ttl: float = 30.0
    prompt_lookback_messages: int = 30
    prompt_lookback_seconds: float = 300.0
    inbound_max_age_seconds: float = 600.0
    request_timeout: float = 15.0
    confirmation_template: str = DEFAULT_CONFIRMATION_TEMPLATE
    prompt_header: str = DEFAULT_PROMPT_HEADER
    survey_text: str = DEFAULT_SURVEY_TEXT

    @property
    def push_configured(self) -> bool:
        return bool(self.provider_instance and self.provider_api_key)


def _float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


def _int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@lru_cache(maxsize=1)
def get_settings() -> SyncSettings:
    """Load settings from the environment (and a local ``.env`` file)."""

    load_dotenv()
    defaults = SyncSettings()
    return SyncSettings(
        provider_base_url=os.getenv("EVOLUTION_BASE_URL", "").rstrip("/"),
        provider_instance=os.getenv("EVOLUTION_INSTANCE", ""),
        provider_api_key=os.getenv("EVOLUTION_API_KEY", ""),
        store_base_url=os.getenv("STORE_BASE_URL", "").rstrip("/"),
        store_token=os.getenv("STORE_TOKEN", ""),
        chat_record_type=os.getenv("STORE_CHAT_RECORD_TYPE", defaults.chat_record_type),
        department_record_type=os.getenv(
            "STORE_DEPARTMENT_RECORD_TYPE", defaults.department_record_type
        ),
        agent_record_type=os.getenv("STORE_AGENT_RECORD_TYPE", defaults.agent_record_type),
        fast_refresh_interval=_float("SYNC_FAST_INTERVAL", defaults.fast_refresh_interval),
        slow_refresh_interval=_float("SYNC_SLOW_INTERVAL", defaults.slow_refresh_interval),
        message_fetch_limit=_int("SYNC_MESSAGE_LIMIT", defaults.message_fetch_limit),
        conversation_fetch_limit=_int(
            "SYNC_CONVERSATION_LIMIT", defaults.conversation_fetch_limit
        ),
        push_max_attempts=_int("PUSH_MAX_ATTEMPTS", defaults.push_max_attempts),
        push_backoff_base=_float("PUSH_BACKOFF_BASE", defaults.push_backoff_base),
        push_backoff_cap=_float("PUSH_BACKOFF_CAP", defaults.push_backoff_cap),
        batch_debounce=_float("PUSH_BATCH_DEBOUNCE", defaults.batch_debounce),
        batch_max_wait=_float("PUSH_BATCH_MAX_WAIT", defaults.batch_max_wait),
        department_cache_ttl=_float("DEPARTMENT_CACHE_TTL", defaults.department_cache_ttl),
        prompt_lookback_messages=_int(
            "PROMPT_LOOKBACK_MESSAGES", defaults.prompt_lookback_messages
        ),
        prompt_lookback_seconds=_float(
            "PROMPT_LOOKBACK_SECONDS", defaults.prompt_lookback_seconds
        ),
        inbound_max_age_seconds=_float(
            "INBOUND_MAX_AGE_SECONDS", defaults.inbound_max_age_seconds
        ),
        request_timeout=_float("REQUEST_TIMEOUT", defaults.request_timeout),
        confirmation_template=os.getenv(
            "ROUTING_CONFIRMATION_TEMPLATE", DEFAULT_CONFIRMATION_TEMPLATE
        ),
        prompt_header=os.getenv("ROUTING_PROMPT_HEADER", DEFAULT_PROMPT_HEADER),
        survey_text=os.getenv("SURVEY_TEXT", DEFAULT_SURVEY_TEXT),
    )


def reset_settings_cache() -> None:
    """Clear cached settings; useful in tests when env vars change."""

    get_settings.cache_clear()
