# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
import hashlib

from pathlib import PurePosixPath


def content_hash(content: str | None) -> str | None:
    """sha256 of a file's text, or None for an absent file"""
    if content is None:
        return None
    return hashlib.sha256(content.encode()).hexdigest()


def normalize_relative_path(path: str) -> str:
    """Canonical project-relative form used as the key for a file."""
    normalized = PurePosixPath(path.replace("\\", "/").lstrip("/"))
    return str(normalized)
