"""Conversation reconciliation engine for department-routed support inboxes."""

from .__version__ import __version__

__all__ = ["__version__"]
