from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class EventType(str, Enum):
    NEW_CHAT_CREATED = "new_chat_created"
    TEXT_DELTA = "text_delta"
    TOOL_CALL_STARTED = "tool_call_started"
    TOOL_CALL_RESULT = "tool_call_result"
    STEP_FINISHED = "step_finished"
    SOURCES = "sources"
    TURN_FINISHED = "turn_finished"
    ERROR = "error"


@dataclass
class SSEEvent:
    event: EventType
    data: dict[str, Any] = field(default_factory=dict)

    def to_sse(self) -> dict[str, str]:
        """Frame accepted by sse_starlette's EventSourceResponse."""
        return {"event": self.event.value, "data": json.dumps(self.data, default=str)}
