# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""Typed dispatch of decoded frames to stream handlers."""

import inspect
import logging

from contextlib import aclosing
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Callable
from pydantic import ValidationError

from ..errors import TransportError
from ..streaming.byte_sources import ByteSource
from ..streaming.cancellation import CancelToken
from ..streaming.stream_decoder import StreamDecoder
from ..types.event_types import (
    Frame,
    FrameKind,
    StreamClosed,
    StreamEvent,
    TextEvent,
    ThinkingEvent,
    ToolCallEvent,
    StructuredDataEvent,
    CompletionEvent,
    ErrorEvent,
    ErrorSource,
    stream_event_adapter,
)

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


@dataclass
class StreamHandlers:
    """Callbacks for one stream. Each may be a plain function or a coroutine
    function; every handler except on_text is optional."""

    on_text: Callable[[TextEvent], Any]
    on_thinking: Callable[[ThinkingEvent], Any] | None = None
    on_tool_call: Callable[[ToolCallEvent], Any] | None = None
    on_structured_data: Callable[[StructuredDataEvent], Any] | None = None
    on_completion: Callable[[CompletionEvent], Any] | None = None
    on_error: Callable[[ErrorEvent], Any] | None = None
    on_close: Callable[[bool], Any] | None = None
    on_open: Callable[[], Any] | None = None


@dataclass
class RouteOutcome:
    aborted: bool
    events_dispatched: int
    error: str | None = None


def frame_to_event(frame: Frame) -> StreamEvent:
    """Validate a frame into its typed event; malformed frames become
    protocol error events rather than exceptions."""
    payload = frame.payload

    if frame.kind == FrameKind.ERROR:
        if isinstance(payload, dict) and isinstance(payload.get("message"), str):
            message = payload["message"]
        else:
            message = str(payload)
        source = ErrorSource.PROTOCOL if frame.synthetic else ErrorSource.REMOTE
        return ErrorEvent(message=message, source=source)

    if frame.kind == FrameKind.COMPLETION:
        if not isinstance(payload, dict):
            return ErrorEvent(
                message="Invalid 'completion' frame: data must be an object",
                source=ErrorSource.PROTOCOL,
            )
        raw: dict[str, Any] = {
            "kind": frame.kind.value,
            "finish_reason": payload.get("finishReason", payload.get("finish_reason")),
            "usage": payload.get("usage"),
            "data": payload,
        }
    elif frame.kind in (FrameKind.TEXT, FrameKind.THINKING):
        raw = {"kind": frame.kind.value, "content": payload}
    else:
        raw = {"kind": frame.kind.value, "data": payload}

    try:
        return stream_event_adapter.validate_python(raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'][1:]) or 'payload'}: {err['msg']}"
            for err in e.errors()
        )
        return ErrorEvent(
            message=f"Invalid '{frame.kind.value}' frame: {problems}",
            source=ErrorSource.PROTOCOL,
        )


class EventRouter:
    """Dispatches events to exactly one handler each, in decode order.

    Handlers run one at a time and each is awaited before the next frame is
    pulled. Once the cancel token fires, nothing but on_close(True) runs.
    """

    def __init__(self, handlers: StreamHandlers, cancel_token: CancelToken | None = None):
        self.handlers = handlers
        self.cancel_token = cancel_token
        self._closed = False

    @property
    def cancelled(self) -> bool:
        return self.cancel_token is not None and self.cancel_token.cancelled

    async def route(
        self, frames: AsyncGenerator[Frame | StreamClosed, None]
    ) -> RouteOutcome:
        self._closed = False
        dispatched = 0

        await self._invoke("on_open")

        try:
            async with aclosing(frames) as stream:
                async for item in stream:
                    if self.cancelled:
                        await self._close(aborted=True)
                        return RouteOutcome(aborted=True, events_dispatched=dispatched)

                    if isinstance(item, StreamClosed):
                        await self._close(aborted=item.aborted)
                        return RouteOutcome(aborted=item.aborted, events_dispatched=dispatched)

                    await self.dispatch(frame_to_event(item))
                    dispatched += 1
        except TransportError as e:
            if self.cancelled:
                await self._close(aborted=True)
                return RouteOutcome(aborted=True, events_dispatched=dispatched)

            logger.error(f"Stream transport failure: {e}")
            await self._invoke(
                "on_error", ErrorEvent(message=str(e), source=ErrorSource.TRANSPORT)
            )
            await self._close(aborted=False)
            return RouteOutcome(aborted=False, events_dispatched=dispatched, error=str(e))

        # Frame sources that end without a StreamClosed item
        aborted = self.cancelled
        await self._close(aborted=aborted)
        return RouteOutcome(aborted=aborted, events_dispatched=dispatched)

    async def dispatch(self, event: StreamEvent) -> None:
        match event:
            case TextEvent():
                await self._invoke("on_text", event)
            case ThinkingEvent():
                await self._invoke("on_thinking", event)
            case ToolCallEvent():
                await self._invoke("on_tool_call", event)
            case StructuredDataEvent():
                await self._invoke("on_structured_data", event)
            case CompletionEvent():
                await self._invoke("on_completion", event)
            case ErrorEvent():
                await self._invoke("on_error", event)
            case _:
                raise TypeError(f"Unhandled stream event: {event!r}")

    async def _close(self, aborted: bool) -> None:
        if self._closed:
            return
        self._closed = True
        await self._invoke("on_close", aborted)

    async def _invoke(self, name: str, *args: Any) -> None:
        handler = getattr(self.handlers, name)
        if handler is None:
            return
        try:
            result = handler(*args)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in stream handler {name}: {e}")


async def decode(
    source: ByteSource,
    handlers: StreamHandlers,
    cancel_token: CancelToken | None = None,
    decoder: StreamDecoder | None = None,
) -> RouteOutcome:
    """Decode a byte source and route every event to `handlers`."""
    decoder = decoder or StreamDecoder()
    router = EventRouter(handlers, cancel_token)
    return await router.route(decoder.decode(source, cancel_token))
