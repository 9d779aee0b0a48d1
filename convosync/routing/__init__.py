"""Department routing and conversation lifecycle state machines."""

from .departments import DepartmentDirectory, first_agent_for, resolve_selection
from .lifecycle import evaluate_inbound
from .machine import RoutingContext, on_prompt_result, route_inbound

__all__ = [
    "DepartmentDirectory",
    "RoutingContext",
    "evaluate_inbound",
    "first_agent_for",
    "on_prompt_result",
    "resolve_selection",
    "route_inbound",
]
