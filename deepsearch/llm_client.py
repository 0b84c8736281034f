"""OpenRouter LLM client factory with a streaming tool-call adapter."""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from deepsearch.config import settings
from deepsearch.models.schemas import Message, TextPart, ToolInvocationPart
from deepsearch.services.env_safety import sanitize_ssl_keylogfile


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass
class ToolCallRequest:
    id: str
    name: str
    arguments: dict[str, Any]
    raw_arguments: str = ""


@dataclass
class StepOutput:
    """Everything the model produced in one step."""

    text: str = ""
    tool_calls: list[ToolCallRequest] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    finish_reason: str | None = None


def _parse_arguments(raw: str) -> dict[str, Any]:
    try:
        parsed = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return parsed if isinstance(parsed, dict) else {}


class OpenRouterStream:
    """Async context manager over one streamed chat completion.

    ``text_stream`` yields text deltas as they arrive; tool-call fragments are
    accumulated by index and surfaced through ``get_final_message``.
    """

    def __init__(self, stream_coro: Any):
        self._stream_coro = stream_coro
        self._stream: Any | None = None
        self._usage = Usage()
        self._text_parts: list[str] = []
        self._tool_slots: dict[int, dict[str, str]] = {}
        self._finish_reason: str | None = None
        self._finished = False

    async def __aenter__(self) -> "OpenRouterStream":
        self._stream = await self._stream_coro
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._stream is not None:
            await self._stream.close()

    def _absorb_tool_deltas(self, deltas: list[Any]) -> None:
        for tc in deltas:
            index = getattr(tc, "index", None)
            if index is None:
                index = len(self._tool_slots)
            slot = self._tool_slots.setdefault(index, {"id": "", "name": "", "arguments": ""})
            if getattr(tc, "id", None):
                slot["id"] = tc.id
            function = getattr(tc, "function", None)
            if function is None:
                continue
            if getattr(function, "name", None):
                slot["name"] = function.name
            if getattr(function, "arguments", None):
                slot["arguments"] += function.arguments

    async def _iter_text(self) -> AsyncIterator[str]:
        if self._stream is None:
            return
        async for chunk in self._stream:
            usage = getattr(chunk, "usage", None)
            if usage:
                self._usage = Usage(
                    input_tokens=getattr(usage, "prompt_tokens", 0) or 0,
                    output_tokens=getattr(usage, "completion_tokens", 0) or 0,
                )

            choices = getattr(chunk, "choices", None) or []
            if not choices:
                continue
            choice = choices[0]
            if getattr(choice, "finish_reason", None):
                self._finish_reason = choice.finish_reason
            delta = getattr(choice, "delta", None)
            if not delta:
                continue
            self._absorb_tool_deltas(getattr(delta, "tool_calls", None) or [])
            text = getattr(delta, "content", None)
            if text:
                self._text_parts.append(text)
                yield text
        self._finished = True

    @property
    def text_stream(self) -> AsyncIterator[str]:
        return self._iter_text()

    async def get_final_message(self) -> StepOutput:
        if not self._finished:
            async for _ in self.text_stream:
                pass
        tool_calls = [
            ToolCallRequest(
                id=slot["id"] or f"call_{index}",
                name=slot["name"],
                arguments=_parse_arguments(slot["arguments"]),
                raw_arguments=slot["arguments"],
            )
            for index, slot in sorted(self._tool_slots.items())
        ]
        return StepOutput(
            text="".join(self._text_parts),
            tool_calls=tool_calls,
            usage=self._usage,
            finish_reason=self._finish_reason,
        )


def to_openai_messages(system: str, messages: list[Message]) -> list[dict[str, Any]]:
    """Flatten part-based history into OpenAI chat messages.

    Consecutive tool invocations of an assistant message become one assistant
    message with ``tool_calls`` followed by one ``tool`` message per result.
    Invocations without a result are dropped, since the API rejects tool
    calls that have no answer.
    """
    openai_messages: list[dict[str, Any]] = [{"role": "system", "content": system}]

    for message in messages:
        if message.role != "assistant":
            openai_messages.append({"role": message.role, "content": message.text})
            continue

        pending_text: list[str] = []
        pending_calls: list[ToolInvocationPart] = []

        def flush_calls() -> None:
            if not pending_calls:
                return
            openai_messages.append(
                {
                    "role": "assistant",
                    "content": "\n".join(pending_text) if pending_text else None,
                    "tool_calls": [
                        {
                            "id": part.tool_call_id,
                            "type": "function",
                            "function": {
                                "name": part.tool_name,
                                "arguments": json.dumps(part.args or {}),
                            },
                        }
                        for part in pending_calls
                    ],
                }
            )
            for part in pending_calls:
                openai_messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": part.tool_call_id,
                        "content": json.dumps(part.result, default=str),
                    }
                )
            pending_text.clear()
            pending_calls.clear()

        for part in message.parts:
            if isinstance(part, TextPart):
                if pending_calls:
                    flush_calls()
                pending_text.append(part.text)
            elif isinstance(part, ToolInvocationPart) and part.state == "result":
                pending_calls.append(part)
        flush_calls()

        if pending_text:
            openai_messages.append({"role": "assistant", "content": "\n".join(pending_text)})

    return openai_messages


class OpenRouterChatAdapter:
    def __init__(self, openai_client: Any):
        self._client = openai_client

    @staticmethod
    def _temperature_for_model(model: str) -> int:
        # Some OpenAI GPT-5-compatible gateways reject temperature=0.
        lowered = (model or "").lower()
        if "gpt-5" in lowered:
            return 1
        return 0

    def stream(
        self,
        *,
        model: str,
        system: str,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        max_tokens: int | None = None,
    ) -> OpenRouterStream:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": to_openai_messages(system, messages),
            "max_tokens": max_tokens or settings.max_tokens_per_step,
            "temperature": self._temperature_for_model(model),
            "stream": True,
            "stream_options": {"include_usage": True},
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        return OpenRouterStream(self._client.chat.completions.create(**kwargs))


def get_client() -> OpenRouterChatAdapter:
    """Get OpenRouter client via OpenAI-compatible SDK."""
    from openai import AsyncOpenAI

    sanitize_ssl_keylogfile()
    base_url = settings.openrouter_base_url.strip() or "https://openrouter.ai/api/v1"
    openai_client = AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
    )
    return OpenRouterChatAdapter(openai_client)


def get_model() -> str:
    """Get the active OpenRouter model id."""
    if settings.openrouter_model:
        return settings.openrouter_model
    return settings.default_model


_client: OpenRouterChatAdapter | None = None


def client() -> OpenRouterChatAdapter:
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
