"""Conversation domain models and record conversion."""

from .models import (
    Agent,
    Conversation,
    ConversationStatus,
    Department,
    Message,
    MessageStatus,
    Sender,
)

__all__ = [
    "Agent",
    "Conversation",
    "ConversationStatus",
    "Department",
    "Message",
    "MessageStatus",
    "Sender",
]
