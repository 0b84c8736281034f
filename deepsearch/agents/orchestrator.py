from __future__ import annotations

import asyncio
import time
from datetime import datetime, timezone
from typing import Any, AsyncGenerator
from uuid import uuid4

from deepsearch.agents.tools import ToolRegistry
from deepsearch.config import settings
from deepsearch.llm_client import OpenRouterChatAdapter, StepOutput, ToolCallRequest
from deepsearch.llm_client import client as llm_client
from deepsearch.llm_client import get_model
from deepsearch.models.events import SSEEvent
from deepsearch.models.schemas import Message, Part, SourcePart, TextPart, ToolInvocationPart
from deepsearch.services import logger as log_service
from deepsearch.services import streaming, telemetry
from deepsearch.services.prompt_store import render_prompt
from deepsearch.tools.web_utils import extract_markdown_links

STEP_LIMIT = "step-limit"


def derive_title(
    messages: list[Message],
    *,
    max_chars: int | None = None,
    default: str | None = None,
) -> str:
    """Title for a new chat: the first user message, whitespace collapsed and truncated."""
    limit = max_chars or settings.title_max_chars
    fallback = default or settings.default_chat_title
    first_user = next((m for m in messages if m.role == "user"), None)
    if first_user is None:
        return fallback
    text = " ".join(first_user.text.split())
    if not text:
        return fallback
    if len(text) > limit:
        return text[:limit] + "..."
    return text


class TurnOrchestrator:
    """Drives one chat turn: a bounded loop of model steps and tool executions.

    ``run`` yields SSE events as they are produced. The assistant message is
    built up in ``response_parts`` while the loop runs, so an aborted turn
    still leaves every completed part behind for persistence.
    """

    def __init__(
        self,
        llm: OpenRouterChatAdapter | None = None,
        tools: ToolRegistry | None = None,
        model: str | None = None,
        max_steps: int | None = None,
        trace: Any | None = None,
        chat_id: str | None = None,
    ):
        self.llm = llm
        self.tools = tools or ToolRegistry()
        self.model = model or get_model()
        self.max_steps = max(int(max_steps or settings.max_steps), 1)
        self.trace = trace
        self.chat_id = chat_id or ""

        self.message_id = str(uuid4())
        self.response_parts: list[Part] = []
        self.steps = 0
        self.tokens_used = 0
        self.finish_reason: str | None = None

    @staticmethod
    def system_prompt() -> str:
        now = datetime.now(timezone.utc)
        return render_prompt(
            "turn.system_prompt",
            current_datetime=now.strftime("%A, %B %d, %Y %H:%M UTC"),
        )

    def assistant_message(self) -> Message | None:
        if not self.response_parts:
            return None
        return Message(id=self.message_id, role="assistant", parts=list(self.response_parts))

    def response_messages(self, history: list[Message]) -> list[Message]:
        """The caller's history followed by this turn's assistant message."""
        assistant = self.assistant_message()
        if assistant is None:
            return list(history)
        return [*history, assistant]

    def answer_text(self) -> str:
        return "\n".join(p.text for p in self.response_parts if isinstance(p, TextPart))

    async def run(self, messages: list[Message]) -> AsyncGenerator[SSEEvent, None]:
        started = time.monotonic()
        system = self.system_prompt()
        active_llm = self.llm or llm_client()

        for step in range(1, self.max_steps + 1):
            self.steps = step
            text_part: TextPart | None = None

            t0 = time.monotonic()
            step_started_at = datetime.now(timezone.utc)
            async with active_llm.stream(
                model=self.model,
                system=system,
                messages=self.response_messages(messages),
                tools=self.tools.specs(),
                max_tokens=settings.max_tokens_per_step,
            ) as stream:
                async for delta in stream.text_stream:
                    if text_part is None:
                        text_part = TextPart(text="")
                        self.response_parts.append(text_part)
                    text_part.text += delta
                    yield streaming.text_delta(step, delta)
                output = await stream.get_final_message()

            self._record_step(step, output, int((time.monotonic() - t0) * 1000), step_started_at)

            if not output.tool_calls:
                self.finish_reason = output.finish_reason or "stop"
                yield streaming.step_finished(step, self.finish_reason, 0)
                break

            for call in output.tool_calls:
                yield streaming.tool_call_started(step, call.id, call.name, call.arguments)

            results = await asyncio.gather(
                *(self._run_tool(call) for call in output.tool_calls)
            )

            for call, result in zip(output.tool_calls, results):
                self.response_parts.append(
                    ToolInvocationPart(
                        tool_call_id=call.id,
                        tool_name=call.name,
                        state="result",
                        args=call.arguments,
                        result=result,
                    )
                )
                yield streaming.tool_call_result(step, call.id, call.name, result)

            yield streaming.step_finished(step, "tool-calls", len(output.tool_calls))
        else:
            self.finish_reason = STEP_LIMIT
            log_service.log_turn_step(self.chat_id, self.steps, "step_limit")
            if not self.answer_text().strip():
                notice = render_prompt("turn.step_limit_notice")
                self.response_parts.append(TextPart(text=notice))
                yield streaming.text_delta(self.steps, notice)

        citations = extract_markdown_links(self.answer_text())
        for item in citations:
            self.response_parts.append(SourcePart(url=item["url"], title=item["title"] or None))
        if citations:
            yield streaming.sources(citations)

        yield streaming.turn_finished(
            self.finish_reason or "stop",
            self.steps,
            tokens_used=self.tokens_used,
            runtime_ms=int((time.monotonic() - started) * 1000),
        )

    async def _run_tool(self, call: ToolCallRequest) -> dict[str, Any]:
        t0 = time.monotonic()
        result = await self.tools.execute(call)
        log_service.log_turn_step(
            self.chat_id,
            self.steps,
            "tool_finished",
            {
                "tool": call.name,
                "tool_call_id": call.id,
                "ok": "error" not in result,
                "duration_ms": int((time.monotonic() - t0) * 1000),
            },
        )
        return result

    def _record_step(
        self,
        step: int,
        output: StepOutput,
        duration_ms: int,
        started_at: datetime,
    ) -> None:
        self.tokens_used += output.usage.total_tokens
        log_service.log_llm_call(
            model=self.model,
            caller="turn",
            input_tokens=output.usage.input_tokens,
            output_tokens=output.usage.output_tokens,
            duration_ms=duration_ms,
        )
        log_service.log_turn_step(
            self.chat_id,
            step,
            "model_finished",
            {
                "finish_reason": output.finish_reason,
                "tool_calls": [c.name for c in output.tool_calls],
                "text_chars": len(output.text),
            },
        )
        telemetry.record_generation(
            self.trace,
            name=f"step-{step}",
            model=self.model,
            output=output.text or [c.name for c in output.tool_calls],
            input_tokens=output.usage.input_tokens,
            output_tokens=output.usage.output_tokens,
            start_time=started_at,
        )
