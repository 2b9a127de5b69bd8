# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
from .change_history import ChangeHistory
from .diffing import create_file_diff, has_changes, parse_patch_hunks, patch_stats, render_patch
