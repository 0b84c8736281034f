from __future__ import annotations

import asyncio
from typing import Any, AsyncGenerator

from loguru import logger

from deepsearch.agents.orchestrator import TurnOrchestrator, derive_title
from deepsearch.config import settings
from deepsearch.models.events import SSEEvent
from deepsearch.models.schemas import Message
from deepsearch.services import logger as log_service
from deepsearch.services import streaming, telemetry
from deepsearch.services.errors import DeepSearchError, PersistenceFailure
from deepsearch.services.store import ChatStore

# Strong references so running producers are not garbage collected.
_background_tasks: set[asyncio.Task] = set()


class ChatTurn:
    """Couples one orchestrator run to one SSE response.

    A producer task runs the orchestrator and feeds an ``asyncio.Queue``; the
    SSE generator drains it. Closing the generator (client disconnect)
    cancels the producer. Whatever ends the producer, ``finalize`` runs once:
    final history write, trace flush, then the ``finalized`` event is set.
    """

    def __init__(
        self,
        *,
        user_id: str,
        chat_id: str,
        history: list[Message],
        orchestrator: TurnOrchestrator,
        store: ChatStore,
        announce_chat_id: bool = False,
        trace: Any | None = None,
    ):
        self.user_id = user_id
        self.chat_id = chat_id
        self.history = list(history)
        self.orchestrator = orchestrator
        self.store = store
        self.announce_chat_id = announce_chat_id
        self.trace = trace

        self.queue: asyncio.Queue[SSEEvent | None] = asyncio.Queue()
        self.finalized = asyncio.Event()
        self._finalize_started = False
        self._producer: asyncio.Task | None = None

    async def write_placeholder(self) -> None:
        """Create the chat before any model call so an interrupted turn cannot lose it."""
        messages = self.history if settings.placeholder_includes_prompt else []
        try:
            await self.store.upsert_chat(
                self.user_id,
                self.chat_id,
                title=derive_title(self.history),
                messages=messages,
            )
        except DeepSearchError:
            raise
        except Exception as e:
            raise PersistenceFailure(f"Placeholder write failed for chat {self.chat_id}: {e}") from e

    def attach_trace(self, trace: Any | None) -> None:
        self.trace = trace
        self.orchestrator.trace = trace

    def start(self) -> asyncio.Task:
        if self._producer is None:
            self._producer = asyncio.create_task(self._produce())
            _background_tasks.add(self._producer)
            self._producer.add_done_callback(_background_tasks.discard)
        return self._producer

    async def stream(self) -> AsyncGenerator[dict[str, str], None]:
        self.start()
        try:
            while True:
                event = await self.queue.get()
                if event is None:
                    break
                yield event.to_sse()
        finally:
            if self._producer is not None and not self._producer.done():
                self._producer.cancel()

    async def events(self) -> list[SSEEvent]:
        """Run the turn to completion and collect its events."""
        self.start()
        collected: list[SSEEvent] = []
        while True:
            event = await self.queue.get()
            if event is None:
                return collected
            collected.append(event)

    async def _produce(self) -> None:
        log_service.log_event(
            event_type="turn_started",
            message="Chat turn started",
            chat_id=self.chat_id,
            user_id=self.user_id,
            model=self.orchestrator.model,
        )
        try:
            if self.announce_chat_id:
                await self.queue.put(streaming.new_chat_created(self.chat_id))
            async for event in self.orchestrator.run(self.history):
                await self.queue.put(event)
        except asyncio.CancelledError:
            self.orchestrator.finish_reason = self.orchestrator.finish_reason or "aborted"
            log_service.log_event(
                event_type="turn_aborted",
                message="Client disconnected; turn cancelled",
                chat_id=self.chat_id,
            )
            raise
        except Exception as e:
            self.orchestrator.finish_reason = "error"
            logger.exception(f"Chat turn {self.chat_id} failed: {e}")
            await self.queue.put(streaming.error("The assistant failed to complete this turn."))
        finally:
            try:
                await self.finalize()
            finally:
                self.queue.put_nowait(None)

    async def finalize(self) -> None:
        if self._finalize_started:
            return
        self._finalize_started = True
        try:
            messages = self.orchestrator.response_messages(self.history)
            try:
                await self.store.upsert_chat(self.user_id, self.chat_id, title=None, messages=messages)
            except Exception as e:
                logger.error(f"Final save failed for chat {self.chat_id}: {e}")

            telemetry.end_trace(
                self.trace,
                output=self.orchestrator.answer_text(),
                metadata={
                    "finish_reason": self.orchestrator.finish_reason,
                    "steps": self.orchestrator.steps,
                    "tokens_used": self.orchestrator.tokens_used,
                },
            )
            await telemetry.flush()
            log_service.log_event(
                event_type="turn_finalized",
                message="Chat turn finalized",
                chat_id=self.chat_id,
                finish_reason=self.orchestrator.finish_reason,
                steps=self.orchestrator.steps,
                messages=len(messages),
            )
        finally:
            self.finalized.set()
