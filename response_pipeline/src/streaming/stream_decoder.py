# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
Decoding of the line-oriented `data: {...}` response stream into frames.

Chunks may split lines (and UTF-8 sequences) anywhere, so bytes go through an
incremental decoder into a text buffer and only complete lines are parsed;
the remainder is carried into the next chunk. Frames come out in stream order,
followed by exactly one StreamClosed.
"""

import json
import codecs
import asyncio
import logging

from typing import Any, AsyncIterator

from .byte_sources import ByteSource
from .cancellation import CancelToken
from ..config import settings
from ..errors import PipelineError, ProtocolError, TransportError
from ..types.event_types import Frame, FrameKind, StreamClosed, PAYLOAD_FIELDS

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

DATA_PREFIX = "data: "


class _ReadCancelled(Exception):
    """The cancel token fired while a chunk read was pending."""


def _loads_envelope(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as e:
        error = e

    # Streams sometimes cut the final closing bracket off an envelope
    stripped = raw.strip()
    for opening, closing in (("{", "}"), ("[", "]")):
        if stripped.startswith(opening) and not stripped.endswith(closing):
            try:
                return json.loads(stripped + closing)
            except json.JSONDecodeError:
                pass

    raise ProtocolError(f"Failed to parse stream data: {error}")


def envelope_to_frame(envelope: Any) -> Frame:
    """Validate a decoded `{type, content|data|error}` envelope."""
    if not isinstance(envelope, dict):
        raise ProtocolError(
            f"Stream envelope must be a JSON object, got {type(envelope).__name__}"
        )

    frame_type = envelope.get("type")
    if not isinstance(frame_type, str):
        raise ProtocolError("Stream envelope has no 'type' discriminator")

    try:
        kind = FrameKind(frame_type)
    except ValueError:
        raise ProtocolError(f"Unknown frame type '{frame_type}'") from None

    field = PAYLOAD_FIELDS[kind]
    if field not in envelope:
        raise ProtocolError(f"'{frame_type}' frame is missing its '{field}' field")

    return Frame(kind=kind, payload=envelope[field])


def parse_line(line: str) -> Frame | None:
    """Parse one complete line; None for lines that carry no frame."""
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return None

    raw = line[len(DATA_PREFIX) :]
    try:
        return envelope_to_frame(_loads_envelope(raw))
    except ProtocolError as e:
        logger.warning(f"Malformed stream frame ({e}): {raw[:200]}")
        return Frame(kind=FrameKind.ERROR, payload=str(e), synthetic=True)


class StreamDecoder:
    """Turns an incremental byte source into frames.

    Each call to `decode` starts from a clean buffer; a decode cannot be
    resumed once it has ended.
    """

    def __init__(self, encoding: str | None = None):
        self.encoding = encoding or settings.STREAM_ENCODING

    async def decode(
        self, source: ByteSource, cancel_token: CancelToken | None = None
    ) -> AsyncIterator[Frame | StreamClosed]:
        text_decoder = codecs.getincrementaldecoder(self.encoding)(errors="replace")
        iterator = source.__aiter__()
        buffer = ""

        try:
            while True:
                if cancel_token is not None and cancel_token.cancelled:
                    yield StreamClosed(aborted=True)
                    return

                try:
                    chunk = await self._next_chunk(iterator, cancel_token)
                except StopAsyncIteration:
                    break
                except _ReadCancelled:
                    logger.info("Stream read cancelled")
                    yield StreamClosed(aborted=True)
                    return

                if isinstance(chunk, str):
                    # Bytes held back by the decoder come before this text
                    buffer += text_decoder.decode(b"", final=True) + chunk
                    text_decoder.reset()
                else:
                    buffer += text_decoder.decode(chunk)

                *lines, buffer = buffer.split("\n")
                for line in lines:
                    frame = parse_line(line)
                    if frame is not None:
                        yield frame

            # Flush any dangling partial sequence and the unterminated last line
            buffer += text_decoder.decode(b"", final=True)
            for line in buffer.split("\n"):
                frame = parse_line(line)
                if frame is not None:
                    yield frame

            yield StreamClosed(aborted=False)
        finally:
            await self._close(iterator)

    async def _next_chunk(
        self, iterator: AsyncIterator[bytes | str], cancel_token: CancelToken | None
    ) -> bytes | str:
        try:
            if cancel_token is None:
                return await iterator.__anext__()

            read = asyncio.ensure_future(iterator.__anext__())
            cancelled = asyncio.ensure_future(cancel_token.wait())
            try:
                done, _ = await asyncio.wait(
                    {read, cancelled}, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                cancelled.cancel()

            if read in done:
                return read.result()

            read.cancel()
            try:
                await read
            except (asyncio.CancelledError, StopAsyncIteration):
                pass
            raise _ReadCancelled()
        except (StopAsyncIteration, _ReadCancelled, PipelineError):
            raise
        except Exception as e:
            raise TransportError(f"Failed to read from stream: {e}") from e

    @staticmethod
    async def _close(iterator: AsyncIterator[bytes | str]) -> None:
        aclose = getattr(iterator, "aclose", None)
        if aclose is None:
            return
        try:
            await aclose()
        except Exception as e:
            logger.warning(f"Error closing stream source: {e}")


def decode_stream(
    source: ByteSource,
    cancel_token: CancelToken | None = None,
    encoding: str | None = None,
) -> AsyncIterator[Frame | StreamClosed]:
    return StreamDecoder(encoding=encoding).decode(source, cancel_token)
