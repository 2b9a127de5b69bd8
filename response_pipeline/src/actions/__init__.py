# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
Applying instruction batches to the project tree
"""

from .filesystem import ExecResult, LocalFileSystem, ProjectFileSystem, resolve_project_path
from .executor import ActionExecutor
from .instructions import INSTRUCTION_TOOLS, extract_instructions
