from __future__ import annotations

from typing import Any

from deepsearch.models.events import EventType, SSEEvent


def new_chat_created(chat_id: str) -> SSEEvent:
    """Out-of-band signal carrying the server-assigned chat id."""
    return SSEEvent(
        event=EventType.NEW_CHAT_CREATED,
        data={"type": "NEW_CHAT_CREATED", "chatId": chat_id},
    )


def text_delta(step: int, text: str) -> SSEEvent:
    return SSEEvent(event=EventType.TEXT_DELTA, data={"step": step, "text": text})


def tool_call_started(
    step: int,
    tool_call_id: str,
    tool_name: str,
    args: dict[str, Any],
) -> SSEEvent:
    return SSEEvent(
        event=EventType.TOOL_CALL_STARTED,
        data={
            "step": step,
            "toolCallId": tool_call_id,
            "toolName": tool_name,
            "args": args,
        },
    )


def tool_call_result(
    step: int,
    tool_call_id: str,
    tool_name: str,
    result: Any,
) -> SSEEvent:
    return SSEEvent(
        event=EventType.TOOL_CALL_RESULT,
        data={
            "step": step,
            "toolCallId": tool_call_id,
            "toolName": tool_name,
            "result": result,
        },
    )


def step_finished(step: int, finish_reason: str | None, tool_calls: int) -> SSEEvent:
    return SSEEvent(
        event=EventType.STEP_FINISHED,
        data={"step": step, "finishReason": finish_reason, "toolCalls": tool_calls},
    )


def sources(items: list[dict[str, str]]) -> SSEEvent:
    return SSEEvent(event=EventType.SOURCES, data={"sources": items})


def turn_finished(
    finish_reason: str,
    steps: int,
    tokens_used: int = 0,
    runtime_ms: int | None = None,
) -> SSEEvent:
    data: dict[str, Any] = {
        "finishReason": finish_reason,
        "steps": steps,
        "tokensUsed": tokens_used,
    }
    if runtime_ms is not None:
        data["runtimeMs"] = runtime_ms
    return SSEEvent(event=EventType.TURN_FINISHED, data=data)


def error(message: str, tool: str | None = None) -> SSEEvent:
    data: dict[str, Any] = {"message": message}
    if tool:
        data["tool"] = tool
    return SSEEvent(event=EventType.ERROR, data=data)
