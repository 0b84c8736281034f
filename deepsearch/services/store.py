from __future__ import annotations

import asyncio
import itertools
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Protocol, Sequence

from deepsearch.config import settings
from deepsearch.models.schemas import ChatDetail, ChatSummary, Message
from deepsearch.services.errors import PermissionDeniedError, PersistenceFailure, TitleRequiredError


class ChatStore(Protocol):
    async def upsert_chat(
        self,
        user_id: str,
        chat_id: str,
        title: str | None = None,
        messages: Sequence[Message] = (),
    ) -> None: ...
    async def get_chat(self, chat_id: str, user_id: str) -> ChatDetail | None: ...
    async def list_chats(self, user_id: str) -> list[ChatSummary]: ...
    async def is_admin(self, user_id: str) -> bool: ...
    async def count_requests_since(self, user_id: str, since: datetime) -> int: ...
    async def record_request(self, user_id: str, created_at: datetime) -> None: ...


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def resolve_title(existing: str | None, title: str | None) -> str:
    """Title to store: a supplied title wins, otherwise the existing one is kept."""
    if title is not None and title.strip():
        return title.strip()
    if existing is None:
        raise TitleRequiredError("A title is required when creating a chat")
    return existing


def ensure_owner(owner_id: str, user_id: str, chat_id: str) -> None:
    if owner_id != user_id:
        raise PermissionDeniedError(f"Chat {chat_id} belongs to another user")


def ensure_unique_ids(messages: Iterable[Message]) -> None:
    seen: set[str] = set()
    for message in messages:
        if message.id in seen:
            raise PersistenceFailure(f"Duplicate message id in history: {message.id}")
        seen.add(message.id)


class InMemoryStore:
    """Process-local store for development and tests.

    Every write runs under one lock, which plays the role of the row lock
    the Postgres backend takes. Reads hand back fresh copies so callers can
    never mutate stored state.
    """

    def __init__(
        self,
        admins: Iterable[str] | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ):
        self._admins = set(admins or ())
        self._clock = clock
        self._lock = asyncio.Lock()
        self._chats: dict[str, dict[str, Any]] = {}
        self._messages: dict[str, list[dict[str, Any]]] = {}
        self._requests: list[tuple[str, datetime]] = []
        self._touch_seq = itertools.count()

    def add_admin(self, user_id: str) -> None:
        self._admins.add(user_id)

    async def upsert_chat(
        self,
        user_id: str,
        chat_id: str,
        title: str | None = None,
        messages: Sequence[Message] = (),
    ) -> None:
        ensure_unique_ids(messages)
        async with self._lock:
            now = self._clock()
            existing = self._chats.get(chat_id)
            if existing is None:
                chat = {
                    "id": chat_id,
                    "user_id": user_id,
                    "title": resolve_title(None, title),
                    "created_at": now,
                }
            else:
                ensure_owner(existing["user_id"], user_id, chat_id)
                chat = {**existing, "title": resolve_title(existing["title"], title)}
            chat["updated_at"] = now
            chat["seq"] = next(self._touch_seq)

            self._chats[chat_id] = chat
            self._messages[chat_id] = [
                {
                    "id": message.id,
                    "role": message.role,
                    "parts": message.parts_payload(),
                    "order": index,
                }
                for index, message in enumerate(messages)
            ]

    async def get_chat(self, chat_id: str, user_id: str) -> ChatDetail | None:
        async with self._lock:
            chat = self._chats.get(chat_id)
            if chat is None or chat["user_id"] != user_id:
                return None
            rows = sorted(self._messages.get(chat_id, []), key=lambda r: r["order"])
            return ChatDetail(
                id=chat["id"],
                user_id=chat["user_id"],
                title=chat["title"],
                created_at=chat["created_at"],
                updated_at=chat["updated_at"],
                messages=[
                    Message.model_validate(
                        {"id": r["id"], "role": r["role"], "parts": r["parts"]}
                    )
                    for r in rows
                ],
            )

    async def list_chats(self, user_id: str) -> list[ChatSummary]:
        async with self._lock:
            owned = [c for c in self._chats.values() if c["user_id"] == user_id]
        owned.sort(key=lambda c: (c["updated_at"], c["seq"]), reverse=True)
        return [
            ChatSummary(
                id=c["id"],
                title=c["title"],
                created_at=c["created_at"],
                updated_at=c["updated_at"],
            )
            for c in owned
        ]

    async def is_admin(self, user_id: str) -> bool:
        return user_id in self._admins

    async def count_requests_since(self, user_id: str, since: datetime) -> int:
        async with self._lock:
            return sum(1 for uid, at in self._requests if uid == user_id and at >= since)

    async def record_request(self, user_id: str, created_at: datetime) -> None:
        async with self._lock:
            self._requests.append((user_id, created_at))


_store: ChatStore | None = None


def get_store() -> ChatStore:
    global _store
    if _store is None:
        backend = settings.storage_backend.lower().strip()
        if backend == "memory":
            _store = InMemoryStore(admins=settings.admin_user_id_list)
        elif backend == "postgres":
            from deepsearch.services.database import PostgresStore

            _store = PostgresStore()
        else:
            raise ValueError(f"Unsupported STORAGE_BACKEND: {settings.storage_backend}")
    return _store


def reset_store() -> None:
    global _store
    _store = None
