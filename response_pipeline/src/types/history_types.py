# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
import os

from enum import Enum
from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field

from .action_types import InstructionsResult


class ChangeType(str, Enum):
    ADDITION = "addition"
    DELETION = "deletion"
    CONTEXT = "context"


class DiffStatus(str, Enum):
    PENDING = "pending"
    KEPT = "kept"
    REVERTED = "reverted"


class DiffChange(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: ChangeType
    content: str
    old_line_number: int | None = None
    new_line_number: int | None = None


class DiffHunk(BaseModel):
    model_config = ConfigDict(frozen=True)

    header: str
    old_start: int
    old_count: int
    new_start: int
    new_count: int
    changes: list[DiffChange] = Field(default_factory=list)


class DiffStats(BaseModel):
    model_config = ConfigDict(frozen=True)

    additions: int = 0
    deletions: int = 0
    modifications: int = 0
    total_lines: int = 0


class FileDiff(BaseModel):
    """Before/after comparison of one file touched by a version.

    Only `status` changes after creation, and only through keep/revert.
    """

    id: str = Field(default_factory=lambda: os.urandom(6).hex())
    file_path: str
    file_name: str
    hunks: list[DiffHunk] = Field(default_factory=list)
    original_content: str = ""
    new_content: str = ""
    original_exists: bool = True
    new_exists: bool = True
    new_content_hash: str | None = None  # None when the file is absent after the batch
    action_index: int = 0  # index of the last action of the batch that touched the file
    status: DiffStatus = DiffStatus.PENDING
    stats: DiffStats = Field(default_factory=DiffStats)


class Version(BaseModel):
    """A numbered snapshot of one applied batch and its diffs."""

    number: int
    instructions_result: InstructionsResult
    diffs: list[FileDiff] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=datetime.now)
    reverts: int | None = None  # set on inverse versions created by a rollback
    reverted_by: int | None = None

    @property
    def is_reverted(self) -> bool:
        return self.reverted_by is not None

    def pending_diffs(self) -> list[FileDiff]:
        return [diff for diff in self.diffs if diff.status == DiffStatus.PENDING]
