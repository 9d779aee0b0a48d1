"""Pydantic schemas for the conversation and sync APIs."""

from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field


class MessageOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    sender: str
    content: str
    timestamp: datetime
    status: str
    type: str = "text"
    provider_message_id: str | None = None
    media_url: str | None = None
    file_name: str | None = None
    mime_type: str | None = None
    author: str | None = None


class ConversationSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    contact_name: str = ""
    contact_number: str = ""
    contact_avatar: str = ""
    status: str
    assigned_agent_id: str | None = None
    department_id: str | None = None
    awaiting_department_selection: bool = False
    department_selection_sent: bool = False
    awaiting_rating: bool = False
    rating: int | None = None
    ended_at: datetime | None = None
    last_message: str = ""
    last_message_time: datetime | None = None
    unread_count: int = 0
    tags: list[str] = Field(default_factory=list)


class ConversationDetail(ConversationSummary):
    messages: list[MessageOut] = Field(default_factory=list)


class ConversationList(BaseModel):
    items: list[ConversationSummary]
    total: int


class CloseRequest(BaseModel):
    with_survey: bool = False


class TransferRequest(BaseModel):
    department_id: str = Field(min_length=1)


class AssignRequest(BaseModel):
    agent_id: str = Field(min_length=1)


class AgentMessageRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    text: str = Field(min_length=1, max_length=4096)
    agent_name: str = Field(min_length=1)
    department_name: str | None = None


class SyncStatus(BaseModel):
    push_state: str
    push_attempts: int
    push_last_error: str | None = None
    push_configured: bool
    refresh_interval: float
    refresh_in_flight: bool
    refresh_cycles: int
    refresh_failures: int
    conversations: int
    snapshot_records: int
    snapshot_loaded_at: datetime | None = None
    primed: bool


class WebhookAck(BaseModel):
    event: str | None = None
    queued: int = 0
