"""Exception hierarchy shared by the engine and its collaborators."""

from __future__ import annotations


class ConvosyncError(Exception):
    """Base class for errors raised by convosync."""


class PayloadError(ConvosyncError, ValueError):
    """Raised when an inbound provider payload cannot be interpreted."""


class ProviderError(ConvosyncError):
    """Raised when the messaging provider rejects or fails a request."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class StoreError(ConvosyncError):
    """Raised when the persistent record store cannot be reached."""


class ConversationNotFoundError(ConvosyncError, KeyError):
    """Raised when an agent action targets an unknown conversation."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(conversation_id)
        self.conversation_id = conversation_id

    def __str__(self) -> str:
        return f"Conversation {self.conversation_id} not found"


class DepartmentNotFoundError(ConvosyncError, KeyError):
    """Raised when a transfer targets a department the directory does not know."""

    def __init__(self, department_id: str) -> None:
        super().__init__(department_id)
        self.department_id = department_id

    def __str__(self) -> str:
        return f"Department {self.department_id} not found"
