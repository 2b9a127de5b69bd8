# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
The filesystem and process primitives actions are applied through.

Everything above this module only ever touches the project tree via a
ProjectFileSystem, so tests and alternative hosts can substitute their own.
"""

import asyncio
import logging

from abc import ABC, abstractmethod
from pathlib import Path
from dataclasses import dataclass

from ..errors import PathOutsideProject
from ..types.common import normalize_relative_path

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int | None
    timed_out: bool = False


class ProjectFileSystem(ABC):
    """Async file and shell primitives. Paths are absolute."""

    @abstractmethod
    async def exists(self, path: Path) -> bool:
        pass

    @abstractmethod
    async def read(self, path: Path) -> str:
        pass

    @abstractmethod
    async def write(self, path: Path, content: str) -> None:
        """Write text, creating missing parent directories."""
        pass

    @abstractmethod
    async def remove(self, path: Path) -> None:
        pass

    @abstractmethod
    async def rename(self, source: Path, destination: Path) -> None:
        """Move a file, creating missing parent directories of the destination."""
        pass

    @abstractmethod
    async def exec(self, command: str, cwd: Path, timeout: float) -> ExecResult:
        pass


def resolve_project_path(project_root: Path | str, target: str) -> Path:
    """Join a target onto the project root, refusing anything that escapes it.

    Leading slashes are dropped so absolute-looking targets stay rooted in
    the project, as they are for the backends that produce them.
    """
    root = Path(project_root).resolve()
    candidate = (root / normalize_relative_path(target)).resolve()
    try:
        candidate.relative_to(root)
    except ValueError:
        raise PathOutsideProject(f"Path outside project root: {target}") from None
    return candidate


class LocalFileSystem(ProjectFileSystem):
    """ProjectFileSystem backed by the local disk and a subprocess shell."""

    def __init__(self, encoding: str = "utf-8", kill_grace: float = 5.0):
        self.encoding = encoding
        self.kill_grace = kill_grace

    async def exists(self, path: Path) -> bool:
        return path.exists()

    async def read(self, path: Path) -> str:
        return path.read_text(encoding=self.encoding)

    async def write(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding=self.encoding)

    async def remove(self, path: Path) -> None:
        path.unlink()

    async def rename(self, source: Path, destination: Path) -> None:
        destination.parent.mkdir(parents=True, exist_ok=True)
        source.rename(destination)

    async def exec(self, command: str, cwd: Path, timeout: float) -> ExecResult:
        process = await asyncio.create_subprocess_shell(
            command,
            cwd=str(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
            except asyncio.TimeoutError:
                process.kill()  # Force kill if terminate didn't work
                await process.wait()

            logger.warning(f"Command timed out after {timeout} seconds: {command}")
            return ExecResult(
                stdout="",
                stderr=f"Command timed out after {timeout} seconds",
                exit_code=process.returncode,
                timed_out=True,
            )

        return ExecResult(
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
            exit_code=process.returncode,
        )
