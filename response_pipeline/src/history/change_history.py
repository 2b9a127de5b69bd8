# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
Versioned, revertible record of the changes each batch made.

Every recorded batch becomes a numbered Version holding one FileDiff per path
it changed. Versions are never removed or renumbered: rolling one back
appends a new inverse Version instead. A diff's status is the only thing that
changes after recording, via keep and revert.

Reverts refuse to run when the file no longer matches what the diff left
behind, so a revert never clobbers edits made since.
"""

import json
import logging

from pathlib import Path
from datetime import datetime

from ..actions.filesystem import LocalFileSystem, ProjectFileSystem, resolve_project_path
from ..errors import PathOutsideProject, StaleRevert, UnknownDiffId, UnknownVersion
from ..types.action_types import (
    ActionResult,
    ActionStatus,
    ActionType,
    InstructionsResult,
)
from ..types.common import content_hash
from ..types.history_types import DiffStatus, FileDiff, Version
from .diffing import create_file_diff, invert_file_diff

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


def _project_key(root: Path, target: str) -> str:
    return resolve_project_path(root, target).relative_to(root).as_posix()


class ChangeHistory:
    def __init__(self, fs: ProjectFileSystem | None = None):
        self.fs = fs or LocalFileSystem()
        self._versions: list[Version] = []
        self._diffs: dict[str, tuple[Version, FileDiff]] = {}

    # Accessors ===============================================================

    @property
    def versions(self) -> list[Version]:
        return list(self._versions)

    @property
    def latest_version(self) -> Version | None:
        return self._versions[-1] if self._versions else None

    def get_version(self, number: int) -> Version:
        if not 1 <= number <= len(self._versions):
            raise UnknownVersion(number)
        return self._versions[number - 1]

    def get_diff(self, diff_id: str) -> FileDiff:
        return self._lookup(diff_id)[1]

    def pending_diffs(self) -> list[FileDiff]:
        return [diff for version in self._versions for diff in version.pending_diffs()]

    def pending_paths(self) -> set[str]:
        return {diff.file_path for diff in self.pending_diffs()}

    # Recording ===============================================================

    async def record_version(
        self,
        result: InstructionsResult,
        pre_images: dict[str, str | None] | None = None,
    ) -> Version:
        """Diff every path a successful file action touched against its
        pre-image. Paths that end up as they started get no diff.

        A path created by the batch (a create target or rename destination)
        with no pre-image entry is taken to have been absent.
        """
        root = Path(result.project_root).resolve()
        if pre_images is None:
            pre_images = result.pre_images
        else:
            pre_images = self._normalize_pre_images(root, pre_images)

        # Path -> index of the last successful action touching it
        touched: dict[str, int] = {}
        created: set[str] = set()
        for index, action in enumerate(result.actions):
            if action.status != ActionStatus.SUCCESS or action.type == ActionType.SHELL:
                continue
            if action.target is not None:
                key = _project_key(root, action.target)
                touched[key] = index
                if action.type == ActionType.CREATE:
                    created.add(key)
            if action.type == ActionType.RENAME and action.new_name is not None:
                key = _project_key(root, action.new_name)
                touched[key] = index
                created.add(key)

        diffs: list[FileDiff] = []
        for key, action_index in touched.items():
            if key in pre_images:
                original = pre_images[key]
            elif key in created:
                original = None
            else:
                logger.warning(f"No pre-image captured for {key}; not recording a diff")
                continue

            current = await self._read_current(root / key)
            if original == current:
                continue

            diffs.append(
                create_file_diff(
                    key,
                    original_content=original or "",
                    new_content=current or "",
                    original_exists=original is not None,
                    new_exists=current is not None,
                    action_index=action_index,
                )
            )

        version = Version(
            number=len(self._versions) + 1, instructions_result=result, diffs=diffs
        )
        self._append(version)
        logger.info(f"Recorded version {version.number} with {len(diffs)} diff(s)")
        return version

    # Keep / revert ===========================================================

    async def keep(self, diff_id: str) -> FileDiff:
        _, diff = self._lookup(diff_id)
        if diff.status == DiffStatus.PENDING:
            diff.status = DiffStatus.KEPT
            logger.info(f"Kept {diff.file_path} ({diff.id})")
        return diff

    async def revert(self, diff_id: str) -> FileDiff:
        version, diff = self._lookup(diff_id)
        if diff.status == DiffStatus.REVERTED:
            return diff

        root = Path(version.instructions_result.project_root).resolve()
        await self._check_not_stale(root, diff)
        await self._restore(root, diff)
        return diff

    async def revert_version(self, number: int) -> Version:
        """Undo every pending diff of a version, newest action first.

        All diffs are checked for staleness before any file is touched. The
        result is a new Version recording the inverse changes; asking again
        for the same version returns that Version.
        """
        version = self.get_version(number)
        if version.reverted_by is not None:
            return self.get_version(version.reverted_by)

        root = Path(version.instructions_result.project_root).resolve()
        ordered = [
            diff
            for _, diff in sorted(
                enumerate(version.pending_diffs()),
                key=lambda item: (item[1].action_index, item[0]),
                reverse=True,
            )
        ]

        for diff in ordered:
            await self._check_not_stale(root, diff)

        inverse_diffs: list[FileDiff] = []
        inverse_results: list[ActionResult] = []
        for diff in ordered:
            await self._restore(root, diff)
            inverse = invert_file_diff(diff)
            inverse.status = DiffStatus.KEPT
            inverse_diffs.append(inverse)
            inverse_results.append(_revert_result(diff, number))

        inverse_version = Version(
            number=len(self._versions) + 1,
            instructions_result=InstructionsResult(
                actions=inverse_results,
                project_root=version.instructions_result.project_root,
                success=True,
            ),
            diffs=inverse_diffs,
            reverts=number,
        )
        self._append(inverse_version)
        version.reverted_by = inverse_version.number
        logger.info(
            f"Reverted version {number} as version {inverse_version.number} "
            f"({len(inverse_diffs)} file(s))"
        )
        return inverse_version

    # Persistence =============================================================

    async def save(self, path: Path) -> None:
        """Write all versions to a JSON file."""
        path.parent.mkdir(parents=True, exist_ok=True)
        data = {
            "last_saved": datetime.now().isoformat(),
            "versions": [version.model_dump(mode="json") for version in self._versions],
        }
        path.write_text(json.dumps(data, indent=2))

    @classmethod
    async def load(cls, path: Path, fs: ProjectFileSystem | None = None) -> "ChangeHistory":
        """Load a history written by `save`; a missing file gives an empty history."""
        history = cls(fs)
        if path.exists():
            data = json.loads(path.read_text())
            for raw in data.get("versions", []):
                history._append(Version.model_validate(raw))
        return history

    # Internals ===============================================================

    def _append(self, version: Version) -> None:
        self._versions.append(version)
        for diff in version.diffs:
            self._diffs[diff.id] = (version, diff)

    def _lookup(self, diff_id: str) -> tuple[Version, FileDiff]:
        try:
            return self._diffs[diff_id]
        except KeyError:
            raise UnknownDiffId(diff_id) from None

    @staticmethod
    def _normalize_pre_images(
        root: Path, pre_images: dict[str, str | None]
    ) -> dict[str, str | None]:
        normalized: dict[str, str | None] = {}
        for path, content in pre_images.items():
            try:
                normalized[_project_key(root, path)] = content
            except PathOutsideProject:
                logger.warning(f"Ignoring pre-image outside the project: {path}")
        return normalized

    async def _read_current(self, path: Path) -> str | None:
        if not await self.fs.exists(path):
            return None
        return await self.fs.read(path)

    async def _check_not_stale(self, root: Path, diff: FileDiff) -> None:
        current = await self._read_current(root / diff.file_path)
        if content_hash(current) != diff.new_content_hash:
            raise StaleRevert(diff.id, diff.file_path)

    async def _restore(self, root: Path, diff: FileDiff) -> None:
        path = root / diff.file_path
        if diff.original_exists:
            await self.fs.write(path, diff.original_content)
        elif await self.fs.exists(path):
            await self.fs.remove(path)
        diff.status = DiffStatus.REVERTED
        logger.info(f"Reverted {diff.file_path} ({diff.id})")


def _revert_result(diff: FileDiff, number: int) -> ActionResult:
    if not diff.original_exists:
        action_type = ActionType.DELETE
    elif not diff.new_exists:
        action_type = ActionType.CREATE
    else:
        action_type = ActionType.UPDATE
    return ActionResult(
        type=action_type,
        target=diff.file_path,
        status=ActionStatus.SUCCESS,
        message=f"Reverted {diff.file_path} from version {number}",
    )
