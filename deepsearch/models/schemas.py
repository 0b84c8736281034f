from __future__ import annotations

from datetime import datetime
from typing import Annotated, Any, Literal, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class _WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(populate_by_name=True)


# --- Message parts ---


class TextPart(_WireModel):
    type: Literal["text"] = "text"
    text: str


class SourcePart(_WireModel):
    type: Literal["source"] = "source"
    url: str
    title: str | None = None


ToolState = Literal["partial-call", "call", "result"]


class ToolInvocationPart(_WireModel):
    type: Literal["tool-invocation"] = "tool-invocation"
    tool_call_id: str = Field(alias="toolCallId")
    tool_name: str = Field(alias="toolName")
    state: ToolState
    args: dict[str, Any] | None = None
    result: Any = None

    @model_validator(mode="after")
    def _check_state_payload(self) -> "ToolInvocationPart":
        if self.state == "result" and self.result is None:
            raise ValueError("tool-invocation in 'result' state requires a result")
        if self.state in ("call", "partial-call") and self.args is None:
            raise ValueError(f"tool-invocation in '{self.state}' state requires args")
        return self


Part = Annotated[
    Union[TextPart, SourcePart, ToolInvocationPart],
    Field(discriminator="type"),
]


class Message(_WireModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    role: Literal["user", "assistant", "system"]
    parts: list[Part] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _content_to_parts(cls, data: Any) -> Any:
        # Clients may still send the flat `content` string instead of parts.
        if isinstance(data, dict) and not data.get("parts") and data.get("content"):
            data = {**data, "parts": [{"type": "text", "text": str(data["content"])}]}
        return data

    @property
    def text(self) -> str:
        return "\n".join(p.text for p in self.parts if isinstance(p, TextPart))

    def parts_payload(self) -> list[dict[str, Any]]:
        return [p.model_dump(by_alias=True, mode="json") for p in self.parts]


# --- Requests ---


class ChatRequest(_WireModel):
    messages: list[Message]
    chat_id: str | None = Field(default=None, alias="chatId")
    is_new_chat: bool = Field(default=False, alias="isNewChat")

    @field_validator("messages")
    @classmethod
    def _unique_message_ids(cls, messages: list[Message]) -> list[Message]:
        seen: set[str] = set()
        for message in messages:
            if message.id in seen:
                raise ValueError(f"Duplicate message id: {message.id}")
            seen.add(message.id)
        return messages


# --- Responses ---


class ChatSummary(_WireModel):
    id: str
    title: str
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")


class ChatDetail(ChatSummary):
    user_id: str = Field(alias="userId")
    messages: list[Message] = Field(default_factory=list)


class QuotaStatus(_WireModel):
    allowed: bool
    remaining: int
    limit: int
    degraded: bool = False


class QuotaExceededResponse(_WireModel):
    error: str = "QuotaExceeded"
    message: str
    remaining: int
    limit: int
