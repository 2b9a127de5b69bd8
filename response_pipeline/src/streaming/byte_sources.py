# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
Incremental byte sources the decoder can consume.

Anything that is an AsyncIterable of bytes or str chunks works as a source;
this module provides the HTTP adapter used against a chat backend plus small
helpers for replaying recorded streams.
"""

import asyncio
import logging

from pathlib import Path
from typing import Any, AsyncIterable, AsyncIterator, Iterable

import httpx

from ..config import settings
from ..errors import TransportError

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

ByteSource = AsyncIterable[bytes | str]


async def iter_chunks(
    chunks: Iterable[bytes | str], delay: float = 0.0
) -> AsyncIterator[bytes | str]:
    """Yield pre-recorded chunks, optionally pausing between them."""
    for chunk in chunks:
        if delay:
            await asyncio.sleep(delay)
        yield chunk


async def iter_file(path: Path, chunk_size: int = 4096) -> AsyncIterator[bytes]:
    """Yield a recorded stream file in fixed-size byte chunks."""
    with path.open("rb") as f:
        while True:
            chunk = f.read(chunk_size)
            if not chunk:
                return
            yield chunk
            # Give other tasks (e.g. a cancel request) a chance to run
            await asyncio.sleep(0)


class HttpByteSource:
    """Streams the body of a POST to a chat endpoint.

    A non-2xx response or any httpx failure surfaces as a TransportError.
    Pass a client to share a connection pool; otherwise one is created and
    closed per stream.
    """

    def __init__(
        self,
        url: str,
        payload: dict[str, Any],
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
        timeout: float | None = None,
    ):
        self.url = url
        self.payload = payload
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self.timeout = timeout if timeout is not None else settings.HTTP_TIMEOUT
        self._client = client

    async def __aiter__(self) -> AsyncIterator[bytes]:
        owns_client = self._client is None
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            async with client.stream(
                "POST", self.url, json=self.payload, headers=self.headers
            ) as response:
                if response.is_error:
                    body = (await response.aread()).decode(errors="replace")
                    raise TransportError(f"HTTP error {response.status_code}: {body}")

                logger.debug(f"Stream opened: {self.url} ({response.status_code})")
                async for chunk in response.aiter_bytes():
                    yield chunk
        except httpx.HTTPError as e:
            raise TransportError(f"Stream request to {self.url} failed: {e}") from e
        finally:
            if owns_client:
                await client.aclose()
