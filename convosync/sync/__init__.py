"""Live synchronisation: refresh polling, push events and the engine."""

from .batcher import MicroBatcher
from .engine import ReconciliationEngine, agent_header
from .push import PushChannelManager, PushState
from .refresh import RefreshChannel

__all__ = [
    "MicroBatcher",
    "PushChannelManager",
    "PushState",
    "ReconciliationEngine",
    "RefreshChannel",
    "agent_header",
]
