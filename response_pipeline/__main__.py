# Self-Improving Coding Agent
# Copyright (c) 2025 Maxime Robeyns
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.
"""
Main entrypoint when running the pipeline with `python -m response_pipeline`.

Replays recorded response streams against a project directory, applies
instruction files directly, and inspects or rolls back the change history
saved alongside.
"""

import sys
import json
import signal
import logging
import asyncio
import argparse

from pathlib import Path
from pydantic import ValidationError

from .pipeline import Pipeline, PipelineContext
from .src.config import settings
from .src.errors import InstructionsParseError, PipelineError
from .src.routing.event_router import StreamHandlers
from .src.streaming.byte_sources import iter_file
from .src.history.change_history import ChangeHistory
from .src.history.diffing import render_patch
from .src.types.action_types import Instructions
from .src.types.history_types import FileDiff, Version

logging.captureWarnings(True)
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(levelname)s - %(filename)s - %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logging.getLogger("httpx").setLevel(logging.WARNING)
logger = logging.getLogger(__name__)

DEFAULT_HISTORY = ".response_pipeline/history.json"


def setup_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="response_pipeline")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument(
            "--project-root",
            type=str,
            default=".",
            help="Directory the actions are applied in",
        )
        sub.add_argument(
            "--history",
            type=str,
            default=None,
            help=f"History file (default: <project-root>/{DEFAULT_HISTORY})",
        )

    replay_parser = subparsers.add_parser(
        "replay", help="Decode a recorded response stream and apply its instructions"
    )
    replay_parser.add_argument("stream_file", type=str, help="File of `data: {...}` lines")
    replay_parser.add_argument(
        "--show-thinking", action="store_true", help="Also print thinking frames"
    )
    add_common(replay_parser)

    apply_parser = subparsers.add_parser("apply", help="Apply an instructions JSON file")
    apply_parser.add_argument("instructions_file", type=str)
    add_common(apply_parser)

    history_parser = subparsers.add_parser("history", help="List recorded versions")
    history_parser.add_argument(
        "--patch", action="store_true", help="Print the patch of every diff"
    )
    add_common(history_parser)

    keep_parser = subparsers.add_parser("keep", help="Accept a pending diff")
    keep_parser.add_argument("diff_id", type=str)
    add_common(keep_parser)

    revert_parser = subparsers.add_parser("revert", help="Undo a single diff")
    revert_parser.add_argument("diff_id", type=str)
    add_common(revert_parser)

    revert_version_parser = subparsers.add_parser(
        "revert-version", help="Undo every pending diff of a version"
    )
    revert_version_parser.add_argument("number", type=int)
    add_common(revert_version_parser)

    return parser


def format_diff(diff: FileDiff) -> str:
    return (
        f"  {diff.id}  {diff.status.value:<8} {diff.file_path} "
        f"(+{diff.stats.additions} -{diff.stats.deletions})"
    )


def format_version(version: Version) -> str:
    header = f"Version {version.number} - {version.created_at:%Y-%m-%d %H:%M:%S}"
    if version.reverts is not None:
        header += f" (reverts version {version.reverts})"
    if version.reverted_by is not None:
        header += f" [reverted by version {version.reverted_by}]"
    return "\n".join([header] + [format_diff(diff) for diff in version.diffs])


async def replay(pipeline: Pipeline, stream_file: Path, show_thinking: bool) -> int:
    def on_text(event):
        print(event.content, end="", flush=True)

    def on_thinking(event):
        if show_thinking:
            print(event.content, end="", flush=True)

    def on_error(event):
        print(f"\n[{event.source.value} error] {event.message}", file=sys.stderr)

    handlers = StreamHandlers(on_text=on_text, on_thinking=on_thinking, on_error=on_error)

    # Ctrl+C stops the stream cleanly instead of killing the process
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, pipeline.cancel, "interrupted")
        handles_sigint = True
    except (NotImplementedError, RuntimeError):
        handles_sigint = False

    try:
        outcome = await pipeline.run_turn(iter_file(stream_file), handlers)
    finally:
        if handles_sigint:
            loop.remove_signal_handler(signal.SIGINT)
    print()

    for result in outcome.results:
        print(result)
    for version in outcome.versions:
        print(format_version(version))

    if outcome.route.aborted:
        return 130
    return 1 if outcome.route.error else 0


async def apply(pipeline: Pipeline, instructions_file: Path) -> int:
    try:
        raw = json.loads(instructions_file.read_text())
        raw["projectRoot"] = str(pipeline.project_root)
        instructions = Instructions.model_validate(raw)
    except (json.JSONDecodeError, TypeError, ValidationError) as e:
        raise InstructionsParseError(f"Invalid instructions file {instructions_file}: {e}") from e

    result, version = await pipeline.apply(instructions)
    print(result)
    if version is not None:
        print(format_version(version))
    return 0 if result.success else 1


async def main() -> int:
    parser = setup_parser()
    args = parser.parse_args()

    project_root = Path(args.project_root).resolve()
    history_file = Path(args.history) if args.history else project_root / DEFAULT_HISTORY

    context = PipelineContext(project_root=project_root, settings=settings)
    history = await ChangeHistory.load(history_file, context.fs)
    pipeline = Pipeline(context, history=history)

    try:
        if args.command == "replay":
            code = await replay(pipeline, Path(args.stream_file), args.show_thinking)
        elif args.command == "apply":
            code = await apply(pipeline, Path(args.instructions_file))
        elif args.command == "history":
            for version in history.versions:
                print(format_version(version))
                if args.patch:
                    for diff in version.diffs:
                        print(render_patch(diff))
            if not history.versions:
                print("No versions recorded")
            return 0
        elif args.command == "keep":
            print(format_diff(await pipeline.keep(args.diff_id)))
            code = 0
        elif args.command == "revert":
            print(format_diff(await pipeline.revert(args.diff_id)))
            code = 0
        elif args.command == "revert-version":
            print(format_version(await pipeline.revert_version(args.number)))
            code = 0
        else:
            parser.error(f"Unknown command {args.command}")
    except PipelineError as e:
        logger.error(str(e))
        return 1

    await history.save(history_file)
    return code


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    cli()
