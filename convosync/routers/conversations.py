"""Conversation inbox and agent action routes."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from ..conversations import schemas as convo_schemas
from ..errors import ConversationNotFoundError, DepartmentNotFoundError
from ..sync.engine import ReconciliationEngine
from .deps import get_engine

router = APIRouter(tags=["conversations"])


def _detail(conversation) -> convo_schemas.ConversationDetail:
    return convo_schemas.ConversationDetail.model_validate(conversation)


@router.get("/api/conversations", response_model=convo_schemas.ConversationList)
async def list_conversations(
    status: str | None = None,
    limit: int = 100,
    engine: ReconciliationEngine = Depends(get_engine),
) -> convo_schemas.ConversationList:
    conversations = engine.list_conversations()
    if status:
        conversations = [c for c in conversations if c.status == status]
    items = [
        convo_schemas.ConversationSummary.model_validate(c) for c in conversations[:limit]
    ]
    return convo_schemas.ConversationList(items=items, total=len(conversations))


@router.get(
    "/api/conversations/{conversation_id}",
    response_model=convo_schemas.ConversationDetail,
)
async def get_conversation(
    conversation_id: str,
    engine: ReconciliationEngine = Depends(get_engine),
) -> convo_schemas.ConversationDetail:
    try:
        return _detail(engine.get(conversation_id))
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc


@router.post(
    "/api/conversations/{conversation_id}/close",
    response_model=convo_schemas.ConversationDetail,
)
async def close_conversation(
    conversation_id: str,
    payload: convo_schemas.CloseRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> convo_schemas.ConversationDetail:
    try:
        conversation = await engine.close(conversation_id, with_survey=payload.with_survey)
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _detail(conversation)


@router.post(
    "/api/conversations/{conversation_id}/transfer",
    response_model=convo_schemas.ConversationDetail,
)
async def transfer_conversation(
    conversation_id: str,
    payload: convo_schemas.TransferRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> convo_schemas.ConversationDetail:
    try:
        conversation = await engine.transfer(conversation_id, payload.department_id)
    except (ConversationNotFoundError, DepartmentNotFoundError) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _detail(conversation)


@router.post(
    "/api/conversations/{conversation_id}/assign",
    response_model=convo_schemas.ConversationDetail,
)
async def assign_conversation(
    conversation_id: str,
    payload: convo_schemas.AssignRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> convo_schemas.ConversationDetail:
    try:
        conversation = await engine.assign(conversation_id, payload.agent_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _detail(conversation)


@router.post(
    "/api/conversations/{conversation_id}/pending",
    response_model=convo_schemas.ConversationDetail,
)
async def mark_pending(
    conversation_id: str,
    engine: ReconciliationEngine = Depends(get_engine),
) -> convo_schemas.ConversationDetail:
    try:
        conversation = await engine.set_pending(conversation_id)
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return _detail(conversation)


@router.post(
    "/api/conversations/{conversation_id}/messages",
    response_model=convo_schemas.MessageOut,
    status_code=201,
)
async def send_message(
    conversation_id: str,
    payload: convo_schemas.AgentMessageRequest,
    engine: ReconciliationEngine = Depends(get_engine),
) -> convo_schemas.MessageOut:
    """Send an agent reply; a provider failure yields a message with status ``error``."""
    try:
        message = await engine.send_agent_message(
            conversation_id,
            payload.text,
            agent_name=payload.agent_name,
            department_name=payload.department_name,
        )
    except ConversationNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return convo_schemas.MessageOut.model_validate(message)
