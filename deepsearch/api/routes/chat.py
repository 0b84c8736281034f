from __future__ import annotations

import json
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError
from sse_starlette.sse import EventSourceResponse

from deepsearch.api.deps import (
    OrchestratorFactory,
    User,
    get_current_user,
    get_orchestrator_factory,
    get_quota_gate,
    get_store,
)
from deepsearch.models.schemas import ChatRequest, QuotaExceededResponse, QuotaStatus
from deepsearch.services import logger as log_service
from deepsearch.services import telemetry
from deepsearch.services.errors import (
    ChatNotFoundError,
    PermissionDeniedError,
    PersistenceFailure,
    QuotaExceededError,
    TitleRequiredError,
)
from deepsearch.services.quota import UNLIMITED, QuotaGate
from deepsearch.services.store import ChatStore
from deepsearch.services.turns import ChatTurn

router = APIRouter(prefix="/api", tags=["chat"])


def _rate_limit_headers(status: QuotaStatus, consumed: int = 0) -> dict[str, str]:
    remaining = status.remaining
    if remaining != UNLIMITED:
        remaining = max(0, remaining - consumed)
    return {
        "X-RateLimit-Limit": str(status.limit),
        "X-RateLimit-Remaining": str(remaining),
    }


async def _parse_body(request: Request) -> ChatRequest:
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise HTTPException(status_code=400, detail="Request body must be valid JSON")
    try:
        body = ChatRequest.model_validate(payload)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors(include_url=False, include_context=False))
    if not body.messages:
        raise HTTPException(status_code=400, detail="messages must not be empty")
    return body


@router.post("/chat")
async def chat(
    request: Request,
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
    gate: QuotaGate = Depends(get_quota_gate),
    make_orchestrator: OrchestratorFactory = Depends(get_orchestrator_factory),
):
    """Run one chat turn and stream its progress as Server-Sent Events."""
    body = await _parse_body(request)

    status = await gate.check_quota(user.id)
    if not status.allowed:
        error = QuotaExceededError(remaining=status.remaining, limit=status.limit)
        payload = QuotaExceededResponse(
            message=str(error),
            remaining=error.remaining,
            limit=error.limit,
        )
        return JSONResponse(
            status_code=429,
            content=payload.model_dump(),
            headers=_rate_limit_headers(status),
        )
    await gate.record_request(user.id)

    announce = body.chat_id is None
    chat_id = body.chat_id or str(uuid4())
    creating = announce or body.is_new_chat

    turn = ChatTurn(
        user_id=user.id,
        chat_id=chat_id,
        history=body.messages,
        orchestrator=make_orchestrator(chat_id=chat_id),
        store=store,
        announce_chat_id=announce,
    )

    if creating:
        try:
            await turn.write_placeholder()
        except PermissionDeniedError:
            raise ChatNotFoundError(chat_id) from None
        except TitleRequiredError as e:
            raise HTTPException(status_code=400, detail=str(e))
        except PersistenceFailure as e:
            log_service.log_event(
                event_type="placeholder_failed",
                message="Could not create chat before streaming",
                error=str(e),
                chat_id=chat_id,
            )
            raise HTTPException(status_code=500, detail="Failed to create chat")
    elif await store.get_chat(chat_id, user.id) is None:
        raise ChatNotFoundError(chat_id)

    turn.attach_trace(telemetry.start_trace(name="chat_turn", user_id=user.id, session_id=chat_id))
    return EventSourceResponse(
        turn.stream(),
        headers=_rate_limit_headers(status, consumed=1),
    )


@router.get("/quota", response_model=QuotaStatus)
async def quota(
    user: User = Depends(get_current_user),
    gate: QuotaGate = Depends(get_quota_gate),
):
    return await gate.check_quota(user.id)
