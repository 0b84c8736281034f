from __future__ import annotations

from fastapi import APIRouter, Depends

from deepsearch.api.deps import User, get_current_user, get_store
from deepsearch.models.schemas import ChatDetail, ChatSummary
from deepsearch.services.errors import ChatNotFoundError
from deepsearch.services.store import ChatStore

router = APIRouter(prefix="/api/chats", tags=["chats"])


@router.get("", response_model=list[ChatSummary], response_model_by_alias=True)
async def list_chats(
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
):
    """List the caller's chats, most recently updated first."""
    return await store.list_chats(user.id)


@router.get("/{chat_id}", response_model=ChatDetail, response_model_by_alias=True)
async def get_chat(
    chat_id: str,
    user: User = Depends(get_current_user),
    store: ChatStore = Depends(get_store),
):
    chat = await store.get_chat(chat_id, user.id)
    if chat is None:
        raise ChatNotFoundError(chat_id)
    return chat
