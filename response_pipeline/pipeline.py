# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
The caller-facing entry point wiring decoder, router, executor and history.

All collaborators come from an explicit PipelineContext, so several
pipelines (e.g. one per project) can coexist in one process.
"""

import asyncio
import inspect
import logging

from pathlib import Path
from dataclasses import dataclass, field, replace
from typing import Any, Callable

from .src.config import Settings, settings as default_settings
from .src.errors import InstructionsParseError, PathOutsideProject
from .src.streaming.byte_sources import ByteSource
from .src.streaming.cancellation import CancelToken
from .src.streaming.stream_decoder import StreamDecoder
from .src.routing.event_router import RouteOutcome, StreamHandlers, decode
from .src.actions.executor import ActionExecutor, ResultReporter
from .src.actions.filesystem import LocalFileSystem, ProjectFileSystem, resolve_project_path
from .src.actions.instructions import extract_instructions
from .src.history.change_history import ChangeHistory
from .src.types.action_types import ActionStatus, Instructions, InstructionsResult
from .src.types.event_types import ErrorEvent, ErrorSource, StreamEvent
from .src.types.history_types import FileDiff, Version

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


@dataclass
class PipelineContext:
    project_root: Path
    fs: ProjectFileSystem = field(default_factory=LocalFileSystem)
    settings: Settings = field(default_factory=lambda: default_settings)
    cancel_token: CancelToken = field(default_factory=CancelToken)


@dataclass
class TurnOutcome:
    route: RouteOutcome
    results: list[InstructionsResult] = field(default_factory=list)
    versions: list[Version] = field(default_factory=list)


async def _call(handler: Callable[..., Any] | None, *args: Any) -> None:
    if handler is None:
        return
    result = handler(*args)
    if inspect.isawaitable(result):
        await result


class Pipeline:
    """One project's response pipeline.

    Turns are serialized: a second `run_turn` or `apply` waits for the first
    to finish. Keep and revert are not locked against each other but must
    not be called while a turn is applying actions.
    """

    def __init__(
        self,
        context: PipelineContext,
        history: ChangeHistory | None = None,
        on_result: ResultReporter | None = None,
    ):
        self.context = context
        self.history = history or ChangeHistory(context.fs)
        self.executor = ActionExecutor(context.fs, context.settings, on_result)
        self._lock = asyncio.Lock()
        self._in_flight: set[CancelToken] = set()

    @property
    def project_root(self) -> Path:
        return Path(self.context.project_root)

    def cancel(self, reason: str | None = None) -> None:
        """Stop the turn in flight, or the next one if none is running.

        Only that turn is stopped; the turns after it get a fresh token.
        """
        self.context.cancel_token.cancel(reason)
        for token in list(self._in_flight):
            token.cancel(reason)

    # Stream ==================================================================

    async def decode(
        self,
        source: ByteSource,
        handlers: StreamHandlers,
        cancel_token: CancelToken | None = None,
    ) -> RouteOutcome:
        token = cancel_token or self.context.cancel_token
        decoder = StreamDecoder(encoding=self.context.settings.STREAM_ENCODING)
        self._in_flight.add(token)
        try:
            return await decode(source, handlers, token, decoder)
        finally:
            self._in_flight.discard(token)
            # A cancellation ends with the turn it stopped
            if self.context.cancel_token.cancelled:
                self.context.cancel_token = CancelToken()

    async def run_turn(
        self,
        source: ByteSource,
        handlers: StreamHandlers,
        cancel_token: CancelToken | None = None,
    ) -> TurnOutcome:
        """Decode a response and apply each instruction set as it arrives.

        Instruction sets are applied inside the dispatch of the event that
        carries them, so they run in stream order and before later events
        are handled. Invalid instruction sets are reported through on_error.
        """
        async with self._lock:
            results: list[InstructionsResult] = []
            versions: list[Version] = []

            def applying(user_handler: Callable[..., Any] | None):
                async def handle(event: StreamEvent) -> None:
                    try:
                        await _call(user_handler, event)
                    except Exception as e:
                        logger.error(f"Error in stream handler: {e}")

                    try:
                        instructions = extract_instructions(event, str(self.project_root))
                    except InstructionsParseError as e:
                        logger.error(f"Rejected instructions: {e}")
                        await _call(
                            handlers.on_error,
                            ErrorEvent(message=str(e), source=ErrorSource.PROTOCOL),
                        )
                        return
                    if instructions is None:
                        return

                    result, version = await self._apply(instructions)
                    results.append(result)
                    if version is not None:
                        versions.append(version)

                return handle

            wrapped = replace(
                handlers,
                on_tool_call=applying(handlers.on_tool_call),
                on_structured_data=applying(handlers.on_structured_data),
            )
            route = await self.decode(source, wrapped, cancel_token)
            return TurnOutcome(route=route, results=results, versions=versions)

    # Actions and history =====================================================

    async def execute(self, instructions: Instructions) -> InstructionsResult:
        locked = self.history.pending_paths()
        if locked and self.context.settings.AUTO_KEEP_PENDING:
            for diff in await self._keep_pending_for(instructions):
                logger.info(f"Auto-kept pending change to {diff.file_path}")
            locked = self.history.pending_paths()
        return await self.executor.execute(instructions, locked_paths=locked)

    async def record_version(self, result: InstructionsResult) -> Version:
        return await self.history.record_version(result)

    async def apply(
        self, instructions: Instructions
    ) -> tuple[InstructionsResult, Version | None]:
        """Execute a batch and record a version if any action succeeded."""
        async with self._lock:
            return await self._apply(instructions)

    async def keep(self, diff_id: str) -> FileDiff:
        return await self.history.keep(diff_id)

    async def revert(self, diff_id: str) -> FileDiff:
        return await self.history.revert(diff_id)

    async def revert_version(self, number: int) -> Version:
        return await self.history.revert_version(number)

    async def _apply(
        self, instructions: Instructions
    ) -> tuple[InstructionsResult, Version | None]:
        result = await self.execute(instructions)
        if not any(a.status == ActionStatus.SUCCESS for a in result.actions):
            return result, None
        return result, await self.record_version(result)

    async def _keep_pending_for(self, instructions: Instructions) -> list[FileDiff]:
        root = Path(instructions.project_root).resolve()
        targets: set[str] = set()
        for action in instructions.actions:
            if not action.is_file_action:
                continue
            for target in (action.target, action.new_name):
                if target is None:
                    continue
                try:
                    path = resolve_project_path(root, target)
                except PathOutsideProject:
                    continue
                targets.add(path.relative_to(root).as_posix())

        kept = []
        for diff in self.history.pending_diffs():
            if diff.file_path in targets:
                kept.append(await self.history.keep(diff.id))
        return kept
