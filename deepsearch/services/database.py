"""PostgreSQL chat store using asyncpg."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Sequence

import asyncpg

from deepsearch.config import settings
from deepsearch.models.schemas import ChatDetail, ChatSummary, Message
from deepsearch.services.errors import PersistenceFailure
from deepsearch.services.logger import log_db_operation
from deepsearch.services.store import ensure_owner, ensure_unique_ids, resolve_title

SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    is_admin BOOLEAN NOT NULL DEFAULT FALSE
);

CREATE TABLE IF NOT EXISTS requests (
    id BIGSERIAL PRIMARY KEY,
    user_id TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS requests_user_created_idx ON requests (user_id, created_at);

CREATE TABLE IF NOT EXISTS chats (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    title TEXT NOT NULL,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS chats_user_updated_idx ON chats (user_id, updated_at DESC);

CREATE TABLE IF NOT EXISTS messages (
    chat_id TEXT NOT NULL REFERENCES chats (id) ON DELETE CASCADE,
    id TEXT NOT NULL,
    role TEXT NOT NULL,
    parts JSONB NOT NULL DEFAULT '[]'::jsonb,
    "order" INTEGER NOT NULL,
    PRIMARY KEY (chat_id, id),
    UNIQUE (chat_id, "order")
);
"""


# Connection pool
_pool: asyncpg.Pool | None = None


def _db_available() -> bool:
    """Check if database is configured and available."""
    return bool(settings.database_url)


async def _get_pool() -> asyncpg.Pool:
    """Get or create the database connection pool."""
    global _pool
    if not _db_available():
        raise RuntimeError("Database not configured. Set DATABASE_URL in .env")
    if _pool is None:
        _pool = await asyncpg.create_pool(
            settings.database_url,
            min_size=1,
            max_size=settings.database_pool_max_size,
        )
    return _pool


async def close_pool() -> None:
    """Close the database connection pool."""
    global _pool
    if _pool is not None:
        await _pool.close()
        _pool = None


async def init_schema() -> None:
    pool = await _get_pool()
    async with pool.acquire() as conn:
        await conn.execute(SCHEMA)
    log_db_operation("init_schema", "*", "success")


def _coerce_json_list(value: Any) -> list[Any]:
    """JSONB comes back as text unless a codec is registered."""
    if isinstance(value, list):
        return value
    if isinstance(value, str):
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError:
            return []
        return parsed if isinstance(parsed, list) else []
    return []


class PostgresStore:
    """ChatStore backed by the shared asyncpg pool.

    Storage errors are wrapped in ``PersistenceFailure``; ownership and title
    violations surface as their own exceptions and leave the rows untouched.
    """

    async def upsert_chat(
        self,
        user_id: str,
        chat_id: str,
        title: str | None = None,
        messages: Sequence[Message] = (),
    ) -> None:
        ensure_unique_ids(messages)
        rows = [
            (chat_id, message.id, message.role, json.dumps(message.parts_payload()), index)
            for index, message in enumerate(messages)
        ]
        try:
            pool = await _get_pool()
            async with pool.acquire() as conn:
                async with conn.transaction():
                    existing = await conn.fetchrow(
                        "SELECT user_id, title FROM chats WHERE id = $1 FOR UPDATE",
                        chat_id,
                    )
                    if existing is None:
                        await conn.execute(
                            """
                            INSERT INTO chats (id, user_id, title)
                            VALUES ($1, $2, $3)
                            """,
                            chat_id,
                            user_id,
                            resolve_title(None, title),
                        )
                    else:
                        ensure_owner(existing["user_id"], user_id, chat_id)
                        await conn.execute(
                            """
                            UPDATE chats
                            SET title = $2, updated_at = now()
                            WHERE id = $1
                            """,
                            chat_id,
                            resolve_title(existing["title"], title),
                        )
                        await conn.execute("DELETE FROM messages WHERE chat_id = $1", chat_id)

                    if rows:
                        await conn.executemany(
                            """
                            INSERT INTO messages (chat_id, id, role, parts, "order")
                            VALUES ($1, $2, $3, $4::jsonb, $5)
                            """,
                            rows,
                        )
        except (asyncpg.PostgresError, OSError) as e:
            log_db_operation("upsert", "chats", "failed", details=chat_id, error=str(e))
            raise PersistenceFailure(f"Failed to save chat {chat_id}: {e}") from e
        log_db_operation("upsert", "chats", "success", details=f"{chat_id} ({len(rows)} messages)")

    async def get_chat(self, chat_id: str, user_id: str) -> ChatDetail | None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            chat = await conn.fetchrow(
                """
                SELECT id, user_id, title, created_at, updated_at
                FROM chats
                WHERE id = $1 AND user_id = $2
                """,
                chat_id,
                user_id,
            )
            if chat is None:
                return None
            results = await conn.fetch(
                """
                SELECT id, role, parts
                FROM messages
                WHERE chat_id = $1
                ORDER BY "order"
                """,
                chat_id,
            )
        return ChatDetail(
            id=chat["id"],
            user_id=chat["user_id"],
            title=chat["title"],
            created_at=chat["created_at"],
            updated_at=chat["updated_at"],
            messages=[
                Message.model_validate(
                    {"id": r["id"], "role": r["role"], "parts": _coerce_json_list(r["parts"])}
                )
                for r in results
            ],
        )

    async def list_chats(self, user_id: str) -> list[ChatSummary]:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            results = await conn.fetch(
                """
                SELECT id, title, created_at, updated_at
                FROM chats
                WHERE user_id = $1
                ORDER BY updated_at DESC
                """,
                user_id,
            )
        return [ChatSummary(**dict(r)) for r in results]

    async def is_admin(self, user_id: str) -> bool:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval("SELECT is_admin FROM users WHERE id = $1", user_id)
        return bool(value)

    async def count_requests_since(self, user_id: str, since: datetime) -> int:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            value = await conn.fetchval(
                "SELECT count(*) FROM requests WHERE user_id = $1 AND created_at >= $2",
                user_id,
                since,
            )
        return int(value or 0)

    async def record_request(self, user_id: str, created_at: datetime) -> None:
        pool = await _get_pool()
        async with pool.acquire() as conn:
            await conn.execute(
                "INSERT INTO requests (user_id, created_at) VALUES ($1, $2)",
                user_id,
                created_at,
            )
