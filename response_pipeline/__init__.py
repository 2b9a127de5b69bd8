# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
Agent response pipeline: decodes a streamed model response into typed events,
applies the file and shell actions it carries to a project tree, and keeps a
revertible version history of every change.
"""

from .pipeline import Pipeline, PipelineContext, TurnOutcome
