# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""Tests for decoding chunked `data: {...}` streams into frames."""
import json
import asyncio
import pytest

from response_pipeline.src.errors import TransportError
from response_pipeline.src.streaming.byte_sources import iter_chunks, iter_file
from response_pipeline.src.streaming.cancellation import CancelToken
from response_pipeline.src.streaming.stream_decoder import (
    StreamDecoder,
    decode_stream,
    parse_line,
)
from response_pipeline.src.types.event_types import Frame, FrameKind, StreamClosed


def sse(envelope: dict) -> str:
    return f"data: {json.dumps(envelope, ensure_ascii=False)}\n"


async def collect(source, cancel_token=None):
    return [item async for item in decode_stream(source, cancel_token)]


MIXED_STREAM = "".join(
    [
        sse({"type": "thinking", "content": "planning…"}),
        sse({"type": "text", "content": "héllo wörld ✓"}),
        ": keep-alive\n",
        sse({"type": "text", "content": "emoji 😀 and 中文"}),
        sse({"type": "tool_call", "data": {"toolName": "edit", "args": {}}}),
        sse({"type": "completion", "data": {"finishReason": "stop"}}),
    ]
).encode("utf-8")

MIXED_FRAMES = [
    Frame(FrameKind.THINKING, "planning…"),
    Frame(FrameKind.TEXT, "héllo wörld ✓"),
    Frame(FrameKind.TEXT, "emoji 😀 and 中文"),
    Frame(FrameKind.TOOL_CALL, {"toolName": "edit", "args": {}}),
    Frame(FrameKind.COMPLETION, {"finishReason": "stop"}),
    StreamClosed(aborted=False),
]


class TestFraming:
    @pytest.mark.asyncio
    async def test_line_split_across_two_chunks(self):
        chunks = [b'data: {"typ', b'e":"text","content":"Hi"}\n']
        items = await collect(iter_chunks(chunks))
        assert items == [Frame(FrameKind.TEXT, "Hi"), StreamClosed(aborted=False)]

    @pytest.mark.asyncio
    async def test_single_chunk(self):
        assert await collect(iter_chunks([MIXED_STREAM])) == MIXED_FRAMES

    @pytest.mark.asyncio
    async def test_every_two_way_split_gives_same_frames(self):
        for offset in range(len(MIXED_STREAM) + 1):
            chunks = [MIXED_STREAM[:offset], MIXED_STREAM[offset:]]
            assert await collect(iter_chunks(chunks)) == MIXED_FRAMES, offset

    @pytest.mark.asyncio
    async def test_byte_at_a_time(self):
        chunks = [MIXED_STREAM[i : i + 1] for i in range(len(MIXED_STREAM))]
        assert await collect(iter_chunks(chunks)) == MIXED_FRAMES

    @pytest.mark.asyncio
    async def test_text_chunks_are_accepted(self):
        text = MIXED_STREAM.decode("utf-8")
        chunks = [text[i : i + 5] for i in range(0, len(text), 5)]
        assert await collect(iter_chunks(chunks)) == MIXED_FRAMES

    @pytest.mark.asyncio
    async def test_text_chunk_after_partial_character_keeps_order(self):
        chunks = [
            'data: {"type": "text", "content": "caf'.encode() + "é".encode()[:1],
            '"}\n',
            sse({"type": "text", "content": "next"}).encode(),
        ]

        frames = await collect(iter_chunks(chunks))

        assert frames == [
            Frame(FrameKind.TEXT, "caf\ufffd"),
            Frame(FrameKind.TEXT, "next"),
            StreamClosed(aborted=False),
        ]

    @pytest.mark.asyncio
    async def test_crlf_line_endings(self):
        stream = sse({"type": "text", "content": "a"}).replace("\n", "\r\n")
        items = await collect(iter_chunks([stream.encode()]))
        assert items == [Frame(FrameKind.TEXT, "a"), StreamClosed(aborted=False)]

    @pytest.mark.asyncio
    async def test_unterminated_last_line_is_flushed(self):
        stream = sse({"type": "text", "content": "a"}) + 'data: {"type":"text","content":"b"}'
        items = await collect(iter_chunks([stream.encode()]))
        assert items == [
            Frame(FrameKind.TEXT, "a"),
            Frame(FrameKind.TEXT, "b"),
            StreamClosed(aborted=False),
        ]

    @pytest.mark.asyncio
    async def test_non_data_lines_are_ignored(self):
        stream = "event: message\n\nid: 4\n: comment\n" + sse({"type": "text", "content": "x"})
        items = await collect(iter_chunks([stream.encode()]))
        assert items == [Frame(FrameKind.TEXT, "x"), StreamClosed(aborted=False)]

    @pytest.mark.asyncio
    async def test_empty_source(self):
        assert await collect(iter_chunks([])) == [StreamClosed(aborted=False)]

    @pytest.mark.asyncio
    async def test_each_decode_starts_fresh(self):
        decoder = StreamDecoder()
        first = [item async for item in decoder.decode(iter_chunks([b'data: {"type":"te']))]
        second = [
            item
            async for item in decoder.decode(iter_chunks([sse({"type": "text", "content": "ok"})]))
        ]
        assert first[-1] == StreamClosed(aborted=False)
        assert second == [Frame(FrameKind.TEXT, "ok"), StreamClosed(aborted=False)]


class TestMalformedFrames:
    @pytest.mark.asyncio
    async def test_bad_json_becomes_error_frame_and_decoding_continues(self):
        stream = "data: {not json at all\n" + sse({"type": "text", "content": "after"})
        items = await collect(iter_chunks([stream.encode()]))

        assert len(items) == 3
        error = items[0]
        assert error.kind == FrameKind.ERROR
        assert error.synthetic is True
        assert "Failed to parse stream data" in error.payload
        assert items[1] == Frame(FrameKind.TEXT, "after")
        assert items[2] == StreamClosed(aborted=False)

    def test_missing_closing_brace_is_tolerated(self):
        frame = parse_line('data: {"type":"text","content":"cut off"')
        assert frame == Frame(FrameKind.TEXT, "cut off")

    def test_unknown_type(self):
        frame = parse_line('data: {"type":"audio","content":"..."}')
        assert frame.kind == FrameKind.ERROR
        assert frame.synthetic
        assert "Unknown frame type 'audio'" in frame.payload

    def test_non_object_envelope(self):
        frame = parse_line("data: [1, 2, 3]")
        assert frame.kind == FrameKind.ERROR
        assert "must be a JSON object" in frame.payload

    def test_missing_type(self):
        frame = parse_line('data: {"content":"x"}')
        assert frame.kind == FrameKind.ERROR
        assert "'type'" in frame.payload

    def test_missing_payload_field(self):
        frame = parse_line('data: {"type":"tool_call","content":"x"}')
        assert frame.kind == FrameKind.ERROR
        assert "'data'" in frame.payload

    def test_remote_error_envelope(self):
        frame = parse_line('data: {"type":"error","error":"rate limited"}')
        assert frame == Frame(FrameKind.ERROR, "rate limited")
        assert frame.synthetic is False

    def test_lines_without_prefix(self):
        assert parse_line("") is None
        assert parse_line("event: ping") is None
        assert parse_line('{"type":"text","content":"x"}') is None


class TestTransportFailure:
    @pytest.mark.asyncio
    async def test_source_exception_is_raised_as_transport_error(self):
        async def failing_source():
            yield sse({"type": "text", "content": "one"}).encode()
            raise ConnectionResetError("peer went away")

        items = []
        with pytest.raises(TransportError, match="peer went away"):
            async for item in decode_stream(failing_source()):
                items.append(item)

        assert items == [Frame(FrameKind.TEXT, "one")]

    @pytest.mark.asyncio
    async def test_source_exception_with_cancel_token(self):
        async def failing_source():
            raise OSError("disk gone")
            yield b""  # pragma: no cover

        with pytest.raises(TransportError, match="disk gone"):
            await collect(failing_source(), CancelToken())


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancelled_before_start(self):
        token = CancelToken()
        token.cancel()
        items = await collect(iter_chunks([MIXED_STREAM]), token)
        assert items == [StreamClosed(aborted=True)]

    @pytest.mark.asyncio
    async def test_no_chunk_processed_after_cancel(self):
        token = CancelToken()
        closed = asyncio.Event()

        async def source():
            try:
                yield sse({"type": "text", "content": "first"}).encode()
                yield sse({"type": "text", "content": "second"}).encode()
            finally:
                closed.set()

        items = []
        async for item in decode_stream(source(), token):
            items.append(item)
            if isinstance(item, Frame):
                token.cancel()

        assert items == [Frame(FrameKind.TEXT, "first"), StreamClosed(aborted=True)]
        assert closed.is_set()

    @pytest.mark.asyncio
    async def test_cancel_interrupts_pending_read(self):
        token = CancelToken()

        async def stalled_source():
            yield sse({"type": "text", "content": "first"}).encode()
            await asyncio.sleep(3600)
            yield sse({"type": "text", "content": "never"}).encode()

        async def cancel_soon():
            await asyncio.sleep(0.01)
            token.cancel("user pressed stop")

        canceller = asyncio.create_task(cancel_soon())
        items = await asyncio.wait_for(collect(stalled_source(), token), timeout=5)
        await canceller

        assert items == [Frame(FrameKind.TEXT, "first"), StreamClosed(aborted=True)]
        assert token.reason == "user pressed stop"

    @pytest.mark.asyncio
    async def test_cancel_token_is_one_shot(self):
        token = CancelToken()
        assert not token.cancelled
        token.cancel("first")
        token.cancel("second")
        assert token.cancelled
        assert token.reason == "first"
        await asyncio.wait_for(token.wait(), timeout=1)


class TestFileSource:
    @pytest.mark.asyncio
    async def test_recorded_stream_file(self, tmp_path):
        path = tmp_path / "stream.txt"
        path.write_bytes(MIXED_STREAM)
        items = [item async for item in decode_stream(iter_file(path, chunk_size=7))]
        assert items == MIXED_FRAMES
