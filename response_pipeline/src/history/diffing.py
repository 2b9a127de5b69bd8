# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
Line diffs between two versions of a file.

The comparison is positional: line i of the old text is only ever compared
with line i of the new text. Equal lines are context and are left out of the
hunks; a differing position contributes a deletion of the old line and an
addition of the new one. Runs of differing positions form one hunk. This
misreports inserted or removed lines as long rewrites, but it is linear and
exactly reproducible from the two texts.
"""

import re

from pathlib import PurePosixPath

from ..types.common import content_hash
from ..types.history_types import (
    ChangeType,
    DiffChange,
    DiffHunk,
    DiffStats,
    FileDiff,
)

HUNK_HEADER = re.compile(r"@@ -(\d+),?(\d*) \+(\d+),?(\d*) @@")


def split_lines(content: str, exists: bool = True) -> list[str]:
    """An absent file has no lines; an empty file has one empty line."""
    if not exists:
        return []
    return content.split("\n")


def _make_hunk(start: int, changes: list[DiffChange]) -> DiffHunk:
    deletions = sum(1 for c in changes if c.type == ChangeType.DELETION)
    additions = sum(1 for c in changes if c.type == ChangeType.ADDITION)
    return DiffHunk(
        header=f"@@ -{start + 1},{deletions} +{start + 1},{additions} @@",
        old_start=start + 1,
        old_count=deletions,
        new_start=start + 1,
        new_count=additions,
        changes=changes,
    )


def compute_hunks(old_lines: list[str], new_lines: list[str]) -> list[DiffHunk]:
    hunks: list[DiffHunk] = []
    changes: list[DiffChange] = []
    start = -1

    for i in range(max(len(old_lines), len(new_lines))):
        old = old_lines[i] if i < len(old_lines) else None
        new = new_lines[i] if i < len(new_lines) else None

        if old == new:
            if changes:
                hunks.append(_make_hunk(start, changes))
                changes, start = [], -1
            continue

        if start == -1:
            start = i
        if old is not None:
            changes.append(
                DiffChange(type=ChangeType.DELETION, content=old, old_line_number=i + 1)
            )
        if new is not None:
            changes.append(
                DiffChange(type=ChangeType.ADDITION, content=new, new_line_number=i + 1)
            )

    if changes:
        hunks.append(_make_hunk(start, changes))
    return hunks


def stats_for(hunks: list[DiffHunk]) -> DiffStats:
    additions = deletions = 0
    for hunk in hunks:
        for change in hunk.changes:
            if change.type == ChangeType.ADDITION:
                additions += 1
            elif change.type == ChangeType.DELETION:
                deletions += 1
    return DiffStats(
        additions=additions,
        deletions=deletions,
        modifications=min(additions, deletions),
        total_lines=additions + deletions,
    )


def create_file_diff(
    file_path: str,
    original_content: str,
    new_content: str,
    original_exists: bool = True,
    new_exists: bool = True,
    action_index: int = 0,
) -> FileDiff:
    hunks = compute_hunks(
        split_lines(original_content, original_exists),
        split_lines(new_content, new_exists),
    )
    return FileDiff(
        file_path=file_path,
        file_name=PurePosixPath(file_path).name or file_path,
        hunks=hunks,
        original_content=original_content,
        new_content=new_content,
        original_exists=original_exists,
        new_exists=new_exists,
        new_content_hash=content_hash(new_content) if new_exists else None,
        action_index=action_index,
        stats=stats_for(hunks),
    )


def invert_file_diff(diff: FileDiff) -> FileDiff:
    """The diff that takes the file from `diff`'s new state back to its original."""
    return create_file_diff(
        diff.file_path,
        original_content=diff.new_content,
        new_content=diff.original_content,
        original_exists=diff.new_exists,
        new_exists=diff.original_exists,
        action_index=diff.action_index,
    )


def has_changes(diff: FileDiff) -> bool:
    return diff.stats.additions > 0 or diff.stats.deletions > 0


# Unified patch text ==========================================================


def render_patch(diff: FileDiff) -> str:
    lines = [f"--- a/{diff.file_path}", f"+++ b/{diff.file_path}"]
    for hunk in diff.hunks:
        lines.append(hunk.header)
        for change in hunk.changes:
            prefix = {
                ChangeType.ADDITION: "+",
                ChangeType.DELETION: "-",
                ChangeType.CONTEXT: " ",
            }[change.type]
            lines.append(f"{prefix}{change.content}")
    return "\n".join(lines) + "\n"


def parse_patch_hunks(patch: str) -> list[DiffHunk]:
    """Parse the hunks of a single-file unified patch.

    `---`/`+++` lines are file headers only before the first hunk; inside a
    hunk they are a deleted `--...` or added `++...` line. A missing count in
    a hunk header means 1.
    """
    hunks: list[DiffHunk] = []
    current: dict | None = None
    old_line = new_line = 0

    def finish():
        if current is not None:
            hunks.append(DiffHunk(**current))

    for line in patch.split("\n"):
        if current is None and (line.startswith("---") or line.startswith("+++")):
            continue

        if line.startswith("@@"):
            match = HUNK_HEADER.match(line)
            if match is None:
                continue
            finish()
            old_start, old_count, new_start, new_count = match.groups()
            current = dict(
                header=line,
                old_start=int(old_start),
                old_count=int(old_count or "1"),
                new_start=int(new_start),
                new_count=int(new_count or "1"),
                changes=[],
            )
            old_line, new_line = int(old_start), int(new_start)
            continue

        if current is None or not line:
            continue

        marker, content = line[0], line[1:]
        if marker == "+":
            change = DiffChange(
                type=ChangeType.ADDITION, content=content, new_line_number=new_line
            )
            new_line += 1
        elif marker == "-":
            change = DiffChange(
                type=ChangeType.DELETION, content=content, old_line_number=old_line
            )
            old_line += 1
        elif marker == " ":
            change = DiffChange(
                type=ChangeType.CONTEXT,
                content=content,
                old_line_number=old_line,
                new_line_number=new_line,
            )
            old_line += 1
            new_line += 1
        else:
            continue
        current["changes"].append(change)

    finish()
    return hunks


def patch_stats(patch: str) -> DiffStats:
    return stats_for(parse_patch_hunks(patch))
