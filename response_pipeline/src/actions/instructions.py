# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
Recognising instruction sets inside stream events.

Backends deliver edits either as a structured_data frame with an `actions`
(or `instructions`) list, or as a tool call to one of INSTRUCTION_TOOLS whose
arguments hold that list. Tool arguments frequently arrive as a JSON string,
sometimes slightly broken, so those are run through json_repair.
"""

import json
import logging

from typing import Any
from json_repair import repair_json
from pydantic import ValidationError

from ..errors import InstructionsParseError
from ..types.action_types import Instructions
from ..types.event_types import StreamEvent, StructuredDataEvent, ToolCallEvent

logger = logging.getLogger(__name__)
logger.setLevel(logging.INFO)

INSTRUCTION_TOOLS = frozenset({"apply_instructions", "instructions", "edit"})


def _load_arguments(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        pass

    repair_result = repair_json(raw, return_objects=True, logging=True)
    if not isinstance(repair_result, tuple):
        raise InstructionsParseError("Unrecognized repair json result")
    repaired, repair_logs = repair_result
    for log in repair_logs:
        logger.debug(f"Repaired tool arguments: {log.get('text', '')}")

    if repaired in ("", None):
        raise InstructionsParseError(f"Tool arguments are not valid JSON: {raw[:200]}")
    return repaired


def _actions_from(container: dict[str, Any]) -> Any | None:
    if "actions" in container:
        return container["actions"]
    nested = container.get("instructions")
    if isinstance(nested, dict):
        return nested.get("actions")
    return nested


def extract_instructions(event: StreamEvent, project_root: str) -> Instructions | None:
    """Return the Instructions carried by `event`, or None if it carries none.

    Raises InstructionsParseError when the event is recognisably an
    instruction set but its actions do not validate. The caller's project
    root always wins over any root named in the payload.
    """
    if isinstance(event, StructuredDataEvent):
        actions = _actions_from(event.data)
        if actions is None:
            return None
        source = "structured data"

    elif isinstance(event, ToolCallEvent):
        if event.tool_name not in INSTRUCTION_TOOLS:
            return None
        source = f"tool call '{event.tool_name}'"

        args = event.data.get("args", event.data.get("arguments"))
        if isinstance(args, str):
            args = _load_arguments(args)
        if not isinstance(args, dict):
            raise InstructionsParseError(f"Arguments of {source} must be an object")

        actions = _actions_from(args)
        if actions is None:
            raise InstructionsParseError(f"{source} carries no actions")

    else:
        return None

    if not isinstance(actions, list):
        raise InstructionsParseError(f"Actions in {source} must be a list")

    try:
        instructions = Instructions.model_validate(
            {"projectRoot": project_root, "actions": actions}
        )
    except ValidationError as e:
        raise InstructionsParseError(f"Invalid actions in {source}: {e}") from e

    logger.info(f"Found {len(instructions.actions)} action(s) in {source}")
    return instructions
