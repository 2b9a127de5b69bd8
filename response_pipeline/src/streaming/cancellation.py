# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
import asyncio
import logging

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


class CancelToken:
    """A one-shot cancellation signal shared from the UI boundary down to the
    decoder and router. Once cancelled it stays cancelled."""

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        logger.debug(f"Cancellation requested: {reason or 'no reason given'}")
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()
