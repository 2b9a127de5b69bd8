# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
import time

from enum import Enum
from typing import Any
from pydantic import BaseModel, ConfigDict, Field, field_validator


class ActionType(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    RENAME = "rename"
    SHELL = "shell"


class ActionStatus(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


FILE_ACTION_TYPES = frozenset(
    {ActionType.CREATE, ActionType.UPDATE, ActionType.DELETE, ActionType.RENAME}
)


def _lower_enum_value(value: Any) -> Any:
    # Backends are inconsistent about casing ("CREATE" vs "create")
    return value.lower() if isinstance(value, str) else value


class Action(BaseModel):
    """A single requested mutation of the project tree."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: ActionType
    target: str | None = None
    content: str | None = None
    new_name: str | None = Field(default=None, alias="newName")
    command: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    normalize_type = field_validator("type", mode="before")(_lower_enum_value)

    @property
    def is_file_action(self) -> bool:
        return self.type in FILE_ACTION_TYPES


class ActionResult(BaseModel):
    """Outcome of one action attempt."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    type: ActionType
    target: str | None = None
    new_name: str | None = Field(default=None, alias="newName")
    command: str | None = None
    status: ActionStatus
    message: str
    error: str | None = None
    error_code: str | None = Field(default=None, alias="errorCode")

    normalize_type = field_validator("type", "status", mode="before")(_lower_enum_value)

    def __str__(self) -> str:
        subject = self.command if self.type == ActionType.SHELL else self.target
        line = f"[{self.status.value.upper()}] {self.type.value} {subject or ''}".rstrip()
        if self.new_name:
            line += f" -> {self.new_name}"
        line += f": {self.message}"
        if self.error:
            line += f"\n  error ({self.error_code or 'unknown'}): {self.error}"
        return line


class Instructions(BaseModel):
    """The unit of work submitted to the executor."""

    model_config = ConfigDict(populate_by_name=True)

    project_root: str = Field(alias="projectRoot")
    actions: list[Action] = Field(default_factory=list)


class ResultSummary(BaseModel):
    total: int
    successful: int
    failed: int
    skipped: int
    by_type: dict[str, int]


class InstructionsResult(BaseModel):
    """The unit returned by the executor, one ActionResult per Action."""

    model_config = ConfigDict(populate_by_name=True)

    actions: list[ActionResult]
    project_root: str = Field(alias="projectRoot")
    success: bool
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))

    # Content of every touched path before the batch (None when it did not
    # exist). Only needed to build the diffs, so it is never serialized.
    pre_images: dict[str, str | None] = Field(default_factory=dict, exclude=True)

    def summary(self) -> ResultSummary:
        by_type = {action_type.value: 0 for action_type in ActionType}
        for result in self.actions:
            by_type[result.type.value] += 1

        return ResultSummary(
            total=len(self.actions),
            successful=sum(1 for a in self.actions if a.status == ActionStatus.SUCCESS),
            failed=sum(1 for a in self.actions if a.status == ActionStatus.FAILURE),
            skipped=sum(1 for a in self.actions if a.status == ActionStatus.SKIPPED),
            by_type=by_type,
        )

    def __str__(self) -> str:
        summary = self.summary()
        header = (
            f"{summary.total} action(s) in {self.project_root}: "
            f"{summary.successful} succeeded, {summary.failed} failed, "
            f"{summary.skipped} skipped"
        )
        return "\n".join([header] + [str(result) for result in self.actions])
