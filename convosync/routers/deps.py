"""Shared FastAPI dependencies."""

from __future__ import annotations

from fastapi import HTTPException, Request

from ..sync.engine import ReconciliationEngine


def get_engine(request: Request) -> ReconciliationEngine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        raise HTTPException(status_code=503, detail="Sync engine not running")
    return engine
