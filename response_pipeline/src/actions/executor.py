# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
Sequential application of an Instructions batch to the project tree.

Each action produces exactly one ActionResult, in order. A failing action is
recorded and the batch carries on; nothing here raises for a bad action.
"""

import logging

from pathlib import Path
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable

from .filesystem import LocalFileSystem, ProjectFileSystem, resolve_project_path
from ..config import Settings, settings as default_settings
from ..errors import (
    ActionError,
    AlreadyExists,
    InvalidAction,
    NotFound,
    PendingChange,
    ShellNonZeroExit,
)
from ..types.action_types import (
    Action,
    ActionResult,
    ActionStatus,
    ActionType,
    Instructions,
    InstructionsResult,
)
from ..types.common import normalize_relative_path

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

ResultReporter = Callable[[InstructionsResult], Awaitable[None]]


class _Skipped(Exception):
    """The action has nothing left to do."""


@dataclass
class _Batch:
    root: Path
    locked: set[str]
    pre_images: dict[str, str | None] = field(default_factory=dict)
    removed: set[str] = field(default_factory=set)

    def key(self, path: Path) -> str:
        return path.relative_to(self.root).as_posix()


class ActionExecutor:
    """Applies file and shell actions through a ProjectFileSystem.

    `locked_paths` passed to `execute` are project-relative paths that still
    have an unresolved diff; any file action touching one fails with
    PendingChange so the earlier diff stays revertible.
    """

    def __init__(
        self,
        fs: ProjectFileSystem | None = None,
        settings: Settings | None = None,
        on_result: ResultReporter | None = None,
    ):
        self.fs = fs or LocalFileSystem()
        self.settings = settings or default_settings
        self.on_result = on_result

    async def execute(
        self, instructions: Instructions, locked_paths: Iterable[str] = ()
    ) -> InstructionsResult:
        root = Path(instructions.project_root).resolve()
        batch = _Batch(
            root=root, locked={normalize_relative_path(p) for p in locked_paths}
        )
        total = len(instructions.actions)
        logger.info(f"Applying {total} action(s) in {root}")

        results: list[ActionResult] = []
        for index, action in enumerate(instructions.actions, start=1):
            subject = action.command if action.type == ActionType.SHELL else action.target
            logger.info(f"[{index}/{total}] {action.type.value} {subject}")

            result = await self._apply(action, batch)
            if result.status == ActionStatus.FAILURE:
                logger.error(f"[{index}/{total}] failed ({result.error_code}): {result.error}")
            else:
                logger.info(f"[{index}/{total}] {result.status.value}: {result.message}")
            results.append(result)

        instructions_result = InstructionsResult(
            actions=results,
            project_root=instructions.project_root,
            success=all(r.status != ActionStatus.FAILURE for r in results),
            pre_images=batch.pre_images,
        )
        await self._report(instructions_result)
        return instructions_result

    async def _apply(self, action: Action, batch: _Batch) -> ActionResult:
        fields = dict(
            type=action.type,
            target=action.target,
            new_name=action.new_name,
            command=action.command,
        )
        try:
            match action.type:
                case ActionType.CREATE:
                    message = await self._create(action, batch)
                case ActionType.UPDATE:
                    message = await self._update(action, batch)
                case ActionType.DELETE:
                    message = await self._delete(action, batch)
                case ActionType.RENAME:
                    message = await self._rename(action, batch)
                case ActionType.SHELL:
                    message = await self._shell(action, batch)
                case _:
                    raise InvalidAction(f"Unknown action type: {action.type}")
        except _Skipped as e:
            return ActionResult(**fields, status=ActionStatus.SKIPPED, message=str(e))
        except ShellNonZeroExit as e:
            return ActionResult(
                **fields,
                status=ActionStatus.FAILURE,
                message=_with_output(str(e), e.stdout, e.stderr),
                error=e.stderr or str(e),
                error_code=e.code,
            )
        except ActionError as e:
            return ActionResult(
                **fields,
                status=ActionStatus.FAILURE,
                message="Failed to execute action",
                error=str(e),
                error_code=e.code,
            )
        except (OSError, UnicodeError) as e:
            return ActionResult(
                **fields,
                status=ActionStatus.FAILURE,
                message="Failed to execute action",
                error=str(e),
                error_code="IOError",
            )

        return ActionResult(**fields, status=ActionStatus.SUCCESS, message=message)

    # File actions ============================================================

    async def _claim(self, batch: _Batch, target: str) -> tuple[Path, str]:
        """Resolve a target, enforce the pending lock, and capture its
        pre-image the first time the batch touches it."""
        path = resolve_project_path(batch.root, target)
        key = batch.key(path)
        if key in batch.locked:
            raise PendingChange(
                f"{key} has a pending change from an earlier version; keep or revert it first"
            )
        if key not in batch.pre_images:
            exists = await self.fs.exists(path)
            batch.pre_images[key] = await self.fs.read(path) if exists else None
        return path, key

    async def _create(self, action: Action, batch: _Batch) -> str:
        if action.target is None or action.content is None:
            raise InvalidAction('Missing content or target for "create" action')
        path, key = await self._claim(batch, action.target)

        if await self.fs.exists(path) and not self.settings.CREATE_OVERWRITES:
            raise AlreadyExists(f"File already exists: {action.target}")

        await self.fs.write(path, action.content)
        batch.removed.discard(key)
        return f"Created file: {action.target}"

    async def _update(self, action: Action, batch: _Batch) -> str:
        if action.target is None or action.content is None:
            raise InvalidAction('Missing content or target for "update" action')
        path, _ = await self._claim(batch, action.target)

        if not await self.fs.exists(path):
            raise NotFound(f"File not found: {action.target}")

        await self.fs.write(path, action.content)
        return f"Updated file: {action.target}"

    async def _delete(self, action: Action, batch: _Batch) -> str:
        if action.target is None:
            raise InvalidAction('Missing target for "delete" action')
        path, key = await self._claim(batch, action.target)

        if key in batch.removed:
            raise _Skipped(f"Already removed earlier in this batch: {action.target}")
        if not await self.fs.exists(path):
            raise NotFound(f"File not found: {action.target}")

        await self.fs.remove(path)
        batch.removed.add(key)
        return f"Deleted file: {action.target}"

    async def _rename(self, action: Action, batch: _Batch) -> str:
        if action.target is None or action.new_name is None:
            raise InvalidAction('Missing target or newName for "rename" action')
        source, source_key = await self._claim(batch, action.target)
        destination, destination_key = await self._claim(batch, action.new_name)

        if not await self.fs.exists(source):
            raise NotFound(f"File not found: {action.target}")
        if await self.fs.exists(destination):
            raise AlreadyExists(f"File already exists: {action.new_name}")

        await self.fs.rename(source, destination)
        batch.removed.add(source_key)
        batch.removed.discard(destination_key)
        return f"Renamed file: {action.target} to {action.new_name}"

    # Shell ===================================================================

    async def _shell(self, action: Action, batch: _Batch) -> str:
        if not action.command:
            raise InvalidAction('Missing command for "shell" action')

        timeout = self.settings.SHELL_TIMEOUT
        result = await self.fs.exec(action.command, cwd=batch.root, timeout=timeout)

        if result.timed_out:
            raise ShellNonZeroExit(
                f"Command timed out after {timeout} seconds: {action.command}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        if result.exit_code != 0:
            raise ShellNonZeroExit(
                f"Command exited with code {result.exit_code}: {action.command}",
                exit_code=result.exit_code,
                stdout=result.stdout,
                stderr=result.stderr,
            )

        if result.stderr:
            logger.warning(f"Command stderr: {result.stderr}")
        return _with_output(f"Executed command: {action.command}", result.stdout, result.stderr)

    async def _report(self, result: InstructionsResult) -> None:
        if self.on_result is None:
            return
        try:
            await self.on_result(result)
        except Exception as e:
            logger.error(f"Failed to report instruction results: {e}")


def _with_output(message: str, stdout: str, stderr: str) -> str:
    if stdout:
        message += f"\n<stdout>{stdout}</stdout>"
    if stderr:
        message += f"\n<stderr>{stderr}</stderr>"
    return message
