"""Push channel health and manual reconnect."""

from __future__ import annotations

from fastapi import APIRouter, Depends

from ..conversations import schemas as convo_schemas
from ..sync.engine import ReconciliationEngine
from .deps import get_engine

router = APIRouter(tags=["sync"])


@router.get("/api/sync/status", response_model=convo_schemas.SyncStatus)
async def sync_status(
    engine: ReconciliationEngine = Depends(get_engine),
) -> convo_schemas.SyncStatus:
    return convo_schemas.SyncStatus(**engine.status())


@router.post("/api/sync/reconnect", response_model=convo_schemas.SyncStatus)
async def reconnect(
    engine: ReconciliationEngine = Depends(get_engine),
) -> convo_schemas.SyncStatus:
    """Reset the retry counter and try the push channel again."""
    await engine.reconnect()
    return convo_schemas.SyncStatus(**engine.status())
