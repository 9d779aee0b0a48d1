"""Collaborator interfaces and their concrete HTTP/socket implementations."""

from .base import PushConnector, PushHandle, ProviderClient, RecordStore

__all__ = ["ProviderClient", "PushConnector", "PushHandle", "RecordStore"]
