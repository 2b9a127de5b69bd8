# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""Tests for dispatching decoded frames to stream handlers."""
import json
import asyncio
import pytest

from unittest.mock import AsyncMock, Mock, call

from response_pipeline.src.routing.event_router import (
    EventRouter,
    StreamHandlers,
    decode,
)
from response_pipeline.src.streaming.byte_sources import iter_chunks
from response_pipeline.src.streaming.cancellation import CancelToken
from response_pipeline.src.types.event_types import (
    CompletionEvent,
    ErrorEvent,
    ErrorSource,
    Frame,
    FrameKind,
    StreamClosed,
    StructuredDataEvent,
    TextEvent,
    ThinkingEvent,
    ToolCallEvent,
)

pytestmark = pytest.mark.asyncio


def sse(envelope: dict) -> bytes:
    return f"data: {json.dumps(envelope)}\n".encode()


def text_frames(n: int) -> list[bytes]:
    return [sse({"type": "text", "content": f"frame {i}"}) for i in range(1, n + 1)]


def full_handlers() -> StreamHandlers:
    return StreamHandlers(
        on_text=AsyncMock(),
        on_thinking=AsyncMock(),
        on_tool_call=AsyncMock(),
        on_structured_data=AsyncMock(),
        on_completion=AsyncMock(),
        on_error=AsyncMock(),
        on_close=AsyncMock(),
        on_open=AsyncMock(),
    )


async def test_each_event_goes_to_its_handler():
    handlers = full_handlers()
    chunks = [
        sse({"type": "thinking", "content": "hmm"}),
        sse({"type": "text", "content": "Hi"}),
        sse({"type": "tool_call", "data": {"toolName": "search", "args": {"q": "x"}}}),
        sse({"type": "structured_data", "data": {"actions": []}}),
        sse(
            {
                "type": "completion",
                "data": {"finishReason": "stop", "usage": {"promptTokens": 3, "completionTokens": 5}},
            }
        ),
        sse({"type": "error", "error": "remote failure"}),
    ]

    outcome = await decode(iter_chunks(chunks), handlers)

    assert outcome.aborted is False
    assert outcome.events_dispatched == 6
    assert outcome.error is None
    handlers.on_open.assert_awaited_once_with()
    handlers.on_thinking.assert_awaited_once_with(ThinkingEvent(content="hmm"))
    handlers.on_text.assert_awaited_once_with(TextEvent(content="Hi"))

    tool_call = handlers.on_tool_call.await_args.args[0]
    assert isinstance(tool_call, ToolCallEvent)
    assert tool_call.tool_name == "search"

    handlers.on_structured_data.assert_awaited_once_with(
        StructuredDataEvent(data={"actions": []})
    )

    completion = handlers.on_completion.await_args.args[0]
    assert isinstance(completion, CompletionEvent)
    assert completion.finish_reason == "stop"
    assert completion.usage.prompt_tokens == 3
    assert completion.usage.completion_tokens == 5

    handlers.on_error.assert_awaited_once_with(
        ErrorEvent(message="remote failure", source=ErrorSource.REMOTE)
    )
    handlers.on_close.assert_awaited_once_with(False)


async def test_dispatch_preserves_stream_order():
    order = []
    handlers = StreamHandlers(
        on_text=lambda e: order.append(("text", e.content)),
        on_thinking=lambda e: order.append(("thinking", e.content)),
        on_close=lambda aborted: order.append(("close", aborted)),
    )
    chunks = [
        sse({"type": "text", "content": "a"}),
        sse({"type": "thinking", "content": "b"}),
        sse({"type": "text", "content": "c"}),
    ]

    await decode(iter_chunks(chunks), handlers)

    assert order == [("text", "a"), ("thinking", "b"), ("text", "c"), ("close", False)]


async def test_handlers_run_one_at_a_time():
    running = 0
    overlaps = []

    async def slow_text(event):
        nonlocal running
        running += 1
        overlaps.append(running)
        await asyncio.sleep(0.001)
        running -= 1

    await decode(iter_chunks(text_frames(5)), StreamHandlers(on_text=slow_text))

    assert overlaps == [1, 1, 1, 1, 1]


async def test_missing_optional_handlers_are_skipped():
    on_text = Mock()
    chunks = [
        sse({"type": "thinking", "content": "ignored"}),
        sse({"type": "completion", "data": {}}),
        sse({"type": "text", "content": "kept"}),
    ]

    outcome = await decode(iter_chunks(chunks), StreamHandlers(on_text=on_text))

    on_text.assert_called_once_with(TextEvent(content="kept"))
    assert outcome.events_dispatched == 3


async def test_failing_handler_does_not_stop_the_stream():
    on_text = AsyncMock(side_effect=[RuntimeError("handler bug"), None, None])
    on_close = Mock()

    outcome = await decode(
        iter_chunks(text_frames(3)), StreamHandlers(on_text=on_text, on_close=on_close)
    )

    assert on_text.await_count == 3
    assert outcome.events_dispatched == 3
    on_close.assert_called_once_with(False)


async def test_malformed_frame_reaches_on_error():
    handlers = full_handlers()
    chunks = [b"data: {oops\n", sse({"type": "text", "content": "after"})]

    await decode(iter_chunks(chunks), handlers)

    error = handlers.on_error.await_args.args[0]
    assert error.source == ErrorSource.PROTOCOL
    assert "Failed to parse stream data" in error.message
    handlers.on_text.assert_awaited_once_with(TextEvent(content="after"))


async def test_transport_error_reports_once_then_closes():
    async def failing_source():
        yield sse({"type": "text", "content": "partial"})
        raise ConnectionResetError("reset by peer")

    handlers = full_handlers()
    outcome = await decode(failing_source(), handlers)

    assert outcome.aborted is False
    assert "reset by peer" in outcome.error
    handlers.on_text.assert_awaited_once()
    handlers.on_error.assert_awaited_once()
    error = handlers.on_error.await_args.args[0]
    assert error.source == ErrorSource.TRANSPORT
    handlers.on_close.assert_awaited_once_with(False)


async def test_cancel_after_two_of_five_frames():
    token = CancelToken()
    seen = []

    async def on_text(event):
        seen.append(event.content)
        if len(seen) == 2:
            token.cancel()

    on_close = AsyncMock()
    outcome = await decode(
        iter_chunks(text_frames(5), delay=0.001),
        StreamHandlers(on_text=on_text, on_close=on_close),
        cancel_token=token,
    )

    assert seen == ["frame 1", "frame 2"]
    assert outcome.aborted is True
    assert outcome.events_dispatched == 2
    on_close.assert_awaited_once_with(True)


async def test_cancel_within_a_single_chunk():
    # All five frames arrive together; the remaining ones are still dropped
    token = CancelToken()
    handlers = full_handlers()
    handlers.on_text = AsyncMock(
        side_effect=lambda event: token.cancel() if event.content == "frame 2" else None
    )

    outcome = await decode(iter_chunks([b"".join(text_frames(5))]), handlers, token)

    assert [c.args[0].content for c in handlers.on_text.call_args_list] == [
        "frame 1",
        "frame 2",
    ]
    assert outcome.aborted is True
    handlers.on_close.assert_awaited_once_with(True)
    handlers.on_error.assert_not_awaited()


async def test_route_accepts_a_plain_frame_generator():
    async def frames():
        yield Frame(FrameKind.TEXT, "one")
        yield StreamClosed(aborted=False)
        yield Frame(FrameKind.TEXT, "never reached")

    handlers = full_handlers()
    outcome = await EventRouter(handlers).route(frames())

    assert outcome.events_dispatched == 1
    handlers.on_close.assert_awaited_once_with(False)


async def test_close_is_called_when_frames_end_without_terminal_item():
    async def frames():
        yield Frame(FrameKind.TEXT, "one")

    handlers = full_handlers()
    await EventRouter(handlers).route(frames())

    assert handlers.on_close.await_args_list == [call(False)]

