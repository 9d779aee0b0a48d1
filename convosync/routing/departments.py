"""Department and agent directory with a short-lived cache."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence

from ..conversations.models import Agent, Department
from ..conversations.records import agent_from_record, department_from_record
from ..providers.base import RecordStore

logger = logging.getLogger(__name__)


def resolve_selection(text: str, departments: Sequence[Department]) -> str | None:
    """Map a customer's reply onto a department id.

    Accepts the 1-based number shown in the prompt, the department name
    (case-insensitive) or the department id.
    """

    reply = (text or "").strip().rstrip(".")
    if not reply:
        return None
    if reply.isdigit():
        index = int(reply)
        if 1 <= index <= len(departments):
            return departments[index - 1].id
        return None
    folded = reply.casefold()
    for department in departments:
        if department.name.strip().casefold() == folded or department.id == reply:
            return department.id
    return None


def first_agent_for(agents: Sequence[Agent], department_id: str) -> Agent | None:
    """First agent (in directory order) who is a member of ``department_id``."""

    for agent in agents:
        if agent.belongs_to(department_id):
            return agent
    return None


class DepartmentDirectory:
    """Loads departments and agents from the store, cached for ``ttl`` seconds."""

    def __init__(
        self,
        store: RecordStore,
        *,
        department_record_type: str = "departments",
        agent_record_type: str = "users",
        ttl: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._department_type = department_record_type
        self._agent_type = agent_record_type
        self._ttl = ttl
        self._clock = clock
        self._departments: tuple[float, list[Department]] | None = None
        self._agents: tuple[float, list[Agent]] | None = None

    def invalidate(self) -> None:
        self._departments = None
        self._agents = None

    def _fresh(self, entry: tuple[float, list] | None) -> bool:
        return entry is not None and self._clock() - entry[0] < self._ttl

    async def departments(self) -> list[Department]:
        if self._fresh(self._departments):
            return list(self._departments[1])
        try:
            raw = await self._store.load_snapshot(self._department_type)
        except Exception as exc:
            logger.warning("Could not load departments: %s", exc)
            return list(self._departments[1]) if self._departments else []
        departments = [
            department_from_record(key, record)
            for key, record in (raw or {}).items()
            if isinstance(record, dict)
        ]
        self._departments = (self._clock(), departments)
        return list(departments)

    async def agents(self) -> list[Agent]:
        if self._fresh(self._agents):
            return list(self._agents[1])
        try:
            raw = await self._store.load_snapshot(self._agent_type)
        except Exception as exc:
            logger.warning("Could not load agents: %s", exc)
            return list(self._agents[1]) if self._agents else []
        agents = [
            agent_from_record(key, record)
            for key, record in (raw or {}).items()
            if isinstance(record, dict)
        ]
        self._agents = (self._clock(), agents)
        return list(agents)

    async def get(self, department_id: str) -> Department | None:
        for department in await self.departments():
            if department.id == department_id:
                return department
        return None
