"""Langfuse tracing for chat turns.

The client is process-wide and created once at application startup. When no
keys are configured tracing is disabled and every helper is a no-op.
"""
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

from langfuse import Langfuse
from loguru import logger

from deepsearch.config import settings

_initialized = False
_langfuse: Optional[Langfuse] = None


def init_telemetry() -> Optional[Langfuse]:
    global _initialized, _langfuse
    if _initialized:
        return _langfuse

    if settings.langfuse_public_key and settings.langfuse_secret_key:
        _langfuse = Langfuse(
            public_key=settings.langfuse_public_key,
            secret_key=settings.langfuse_secret_key,
            host=settings.langfuse_host,
        )
        logger.info(f"Langfuse tracing enabled ({settings.langfuse_host})")
    else:
        _langfuse = None
        logger.info("Langfuse keys not set; tracing disabled")
    _initialized = True
    return _langfuse


def start_trace(
    *,
    name: str,
    user_id: str,
    session_id: str,
    metadata: dict[str, Any] | None = None,
) -> Any | None:
    if not _initialized:
        raise RuntimeError("init_telemetry() must run before traces are started")
    if _langfuse is None:
        return None
    return _langfuse.trace(
        name=name,
        user_id=user_id,
        session_id=session_id,
        metadata={"environment": settings.app_env, **(metadata or {})},
    )


def record_generation(
    trace: Any | None,
    *,
    name: str,
    model: str,
    output: Any,
    input_tokens: int = 0,
    output_tokens: int = 0,
    start_time: datetime | None = None,
) -> None:
    if trace is None:
        return
    try:
        trace.generation(
            name=name,
            model=model,
            output=output,
            usage={"input": input_tokens, "output": output_tokens},
            start_time=start_time,
            end_time=datetime.now(timezone.utc),
        )
    except Exception as e:
        logger.warning(f"Failed to record Langfuse generation {name}: {e}")


def end_trace(trace: Any | None, *, output: Any = None, metadata: dict[str, Any] | None = None) -> None:
    if trace is None:
        return
    try:
        trace.update(output=output, metadata=metadata)
    except Exception as e:
        logger.warning(f"Failed to finalize Langfuse trace: {e}")


async def flush() -> None:
    if _langfuse is None:
        return
    try:
        await asyncio.to_thread(_langfuse.flush)
    except Exception as e:
        logger.warning(f"Langfuse flush failed: {e}")


def shutdown() -> None:
    global _initialized, _langfuse
    if _langfuse is not None:
        try:
            _langfuse.flush()
        except Exception as e:
            logger.warning(f"Langfuse flush at shutdown failed: {e}")
    _langfuse = None
    _initialized = False
