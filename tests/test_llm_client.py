from __future__ import annotations

import json
from types import SimpleNamespace

import pytest

from deepsearch.llm_client import OpenRouterChatAdapter, OpenRouterStream, to_openai_messages
from deepsearch.models.schemas import Message


def _chunk(content=None, tool_calls=None, finish_reason=None, usage=None):
    delta = SimpleNamespace(content=content, tool_calls=tool_calls)
    choices = [SimpleNamespace(delta=delta, finish_reason=finish_reason)]
    return SimpleNamespace(choices=choices, usage=usage)


def _tool_delta(index, id=None, name=None, arguments=None):
    return SimpleNamespace(
        index=index,
        id=id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )


class FakeCompletionStream:
    def __init__(self, chunks):
        self._chunks = list(chunks)
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._chunks:
            raise StopAsyncIteration
        return self._chunks.pop(0)

    async def close(self):
        self.closed = True


async def _coro(value):
    return value


@pytest.mark.asyncio
async def test_stream_yields_text_and_accumulates_tool_calls():
    raw = FakeCompletionStream(
        [
            _chunk(content="Let me "),
            _chunk(content="check."),
            _chunk(tool_calls=[_tool_delta(0, id="call_a", name="search_web", arguments='{"que')]),
            _chunk(tool_calls=[_tool_delta(0, arguments='ry": "paris"}')]),
            _chunk(tool_calls=[_tool_delta(1, id="call_b", name="scrape_pages", arguments='{"urls": []}')]),
            _chunk(finish_reason="tool_calls"),
            SimpleNamespace(choices=[], usage=SimpleNamespace(prompt_tokens=12, completion_tokens=7)),
        ]
    )

    deltas = []
    async with OpenRouterStream(_coro(raw)) as stream:
        async for text in stream.text_stream:
            deltas.append(text)
        output = await stream.get_final_message()

    assert deltas == ["Let me ", "check."]
    assert output.text == "Let me check."
    assert [(c.id, c.name) for c in output.tool_calls] == [("call_a", "search_web"), ("call_b", "scrape_pages")]
    assert output.tool_calls[0].arguments == {"query": "paris"}
    assert output.finish_reason == "tool_calls"
    assert output.usage.total_tokens == 19
    assert raw.closed is True


@pytest.mark.asyncio
async def test_malformed_tool_arguments_become_empty_dict():
    raw = FakeCompletionStream([_chunk(tool_calls=[_tool_delta(0, id="c", name="search_web", arguments="{oops")])])
    async with OpenRouterStream(_coro(raw)) as stream:
        output = await stream.get_final_message()
    assert output.tool_calls[0].arguments == {}
    assert output.tool_calls[0].raw_arguments == "{oops"


def test_history_conversion_pairs_tool_calls_with_results():
    history = [
        Message(role="user", content="Weather in Paris?"),
        Message.model_validate(
            {
                "role": "assistant",
                "parts": [
                    {"type": "text", "text": "Searching."},
                    {
                        "type": "tool-invocation",
                        "toolCallId": "call_1",
                        "toolName": "search_web",
                        "state": "result",
                        "args": {"query": "paris weather"},
                        "result": {"results": []},
                    },
                    {
                        "type": "tool-invocation",
                        "toolCallId": "call_2",
                        "toolName": "search_web",
                        "state": "call",
                        "args": {"query": "unanswered"},
                    },
                    {"type": "text", "text": "It is sunny."},
                    {"type": "source", "url": "https://weather.example"},
                ],
            }
        ),
    ]

    converted = to_openai_messages("SYSTEM", history)

    assert converted[0] == {"role": "system", "content": "SYSTEM"}
    assert converted[1] == {"role": "user", "content": "Weather in Paris?"}
    assert converted[2]["role"] == "assistant"
    assert converted[2]["content"] == "Searching."
    assert [c["id"] for c in converted[2]["tool_calls"]] == ["call_1"]
    assert json.loads(converted[2]["tool_calls"][0]["function"]["arguments"]) == {"query": "paris weather"}
    assert converted[3] == {"role": "tool", "tool_call_id": "call_1", "content": '{"results": []}'}
    assert converted[4] == {"role": "assistant", "content": "It is sunny."}
    assert len(converted) == 5


def test_adapter_sends_tools_and_streaming_options():
    captured = {}

    class Completions:
        def create(self, **kwargs):
            captured.update(kwargs)
            return _coro(FakeCompletionStream([]))

    openai_client = SimpleNamespace(chat=SimpleNamespace(completions=Completions()))
    adapter = OpenRouterChatAdapter(openai_client)
    stream = adapter.stream(
        model="openai/gpt-4o-mini",
        system="SYSTEM",
        messages=[Message(role="user", content="hi")],
        tools=[{"type": "function", "function": {"name": "search_web"}}],
        max_tokens=256,
    )
    # Drop the pending coroutine without awaiting it.
    stream._stream_coro.close()

    assert captured["stream"] is True
    assert captured["tool_choice"] == "auto"
    assert captured["max_tokens"] == 256
    assert captured["temperature"] == 0
    assert captured["messages"][0]["role"] == "system"
