# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
Exception types used across the response pipeline.

Only the history errors and programmer errors are ever raised to callers.
Protocol errors become error events, transport errors end the stream through
the router, and action errors are folded into per-action results.
"""


class PipelineError(Exception):
    """Base class for all response pipeline errors."""


# Stream level ================================================================


class ProtocolError(PipelineError):
    """A single frame could not be decoded or validated."""


class TransportError(PipelineError):
    """The incremental byte source failed while being read."""


# Action level ================================================================


class ActionError(PipelineError):
    """An individual action could not be applied."""

    code: str = "ActionError"


class NotFound(ActionError):
    code = "NotFound"


class AlreadyExists(ActionError):
    code = "AlreadyExists"


class InvalidAction(ActionError):
    """The action is missing a field its type requires."""

    code = "InvalidAction"


class PathOutsideProject(ActionError):
    code = "PathOutsideProject"


class PendingChange(ActionError):
    """The path still has an unresolved diff from an earlier version."""

    code = "PendingChange"


class ShellNonZeroExit(ActionError):
    code = "ShellNonZeroExit"

    def __init__(self, message: str, exit_code: int | None, stdout: str = "", stderr: str = ""):
        super().__init__(message)
        self.exit_code = exit_code
        self.stdout = stdout
        self.stderr = stderr


class InstructionsParseError(PipelineError):
    """An event claims to carry instructions but they failed validation."""


# History level ===============================================================


class HistoryError(PipelineError):
    """A keep/revert request could not be honoured."""


class StaleRevert(HistoryError):
    """The file changed on disk after the diff was recorded."""

    def __init__(self, diff_id: str, file_path: str):
        super().__init__(
            f"Refusing to revert {file_path} (diff {diff_id}): "
            "its content changed after the version was recorded"
        )
        self.diff_id = diff_id
        self.file_path = file_path


class UnknownDiffId(HistoryError):
    def __init__(self, diff_id: str):
        super().__init__(f"No diff with id {diff_id!r}")
        self.diff_id = diff_id


class UnknownVersion(HistoryError):
    def __init__(self, number: int):
        super().__init__(f"No version number {number}")
        self.number = number
