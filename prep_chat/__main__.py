"""CLI entrypoint: send one prompt through the engine and stream the reply."""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Sequence
from importlib import metadata
from pathlib import Path
import sys

from .config import ensure_config_dir, load_config
from .engine import ChatEngine
from .events import CONVERSATION_CREATED, MESSAGE_UPDATED, Event
from .exceptions import PrepChatError
from .logging_utils import configure_logging
from .message import get_error_details
from .multi_model import ComparisonTarget
from .state import StreamPhase


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="prepchat",
        description="prepchat - stream an interview-prep assistant reply to stdout",
    )
    parser.add_argument("prompt", nargs="?", help="Message to send")
    parser.add_argument("--model", help="Model id to use for this request")
    parser.add_argument("--provider", help="Provider of the selected model")
    parser.add_argument("--config", type=Path, help="Path to an alternate config.toml")
    parser.add_argument(
        "--compare",
        action="append",
        metavar="PROVIDER:MODEL",
        help="Send the prompt to this model as part of a side-by-side comparison (repeatable)",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print version and exit",
    )
    return parser


async def _run_prompt(engine: ChatEngine, prompt: str) -> int:
    def on_update(event: Event) -> None:
        if event.data.get("chunk_type") in ("text-delta", "text"):
            sys.stdout.write(event.data.get("delta") or "")
            sys.stdout.flush()

    def on_created(event: Event) -> None:
        print(f"[conversation {event.data['conversation_id']}]", file=sys.stderr)

    engine.bus.subscribe(MESSAGE_UPDATED, on_update)
    engine.bus.subscribe(CONVERSATION_CREATED, on_created)
    try:
        await engine.send(prompt)
        session = await engine.wait()
        await engine.tasks.await_all()
    finally:
        await engine.close()
    print()
    if session is None or session.phase is not StreamPhase.ERROR:
        return 0
    error = get_error_details(session.message)
    print(f"error: {error.message if error else 'request failed'}", file=sys.stderr)
    return 1


def _parse_target(value: str) -> ComparisonTarget | None:
    provider, _, model_id = value.partition(":")
    if not provider.strip() or not model_id.strip():
        return None
    return ComparisonTarget(model_id=model_id.strip(), provider=provider.strip())


async def _run_comparison(
    engine: ChatEngine, prompt: str, targets: list[ComparisonTarget]
) -> int:
    try:
        await engine.compare(prompt, targets)
        responses = await engine.comparison.wait()
    finally:
        await engine.close()
    failed = 0
    for key, response in responses.items():
        print(f"== {key} ==")
        if response.error:
            failed += 1
            print(f"error: {response.error}", file=sys.stderr)
        print(response.content)
    return 1 if failed == len(responses) else 0


def main(argv: Sequence[str] | None = None) -> int:
    """Load configuration, handle CLI flags, and stream one reply."""
    parser = _build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    if args.version:
        try:
            version = metadata.version("prepchat")
        except metadata.PackageNotFoundError:
            version = "0.0.0"
        print(f"prepchat {version}")
        return 0

    if not args.prompt:
        parser.error("a prompt is required")

    targets: list[ComparisonTarget] = []
    for value in args.compare or ():
        target = _parse_target(value)
        if target is None:
            parser.error(f"--compare expects PROVIDER:MODEL, got {value!r}")
        targets.append(target)

    if args.config is None:
        ensure_config_dir()
    config = load_config(args.config)
    configure_logging(config["logging"])

    engine = ChatEngine.from_config(config)
    if args.model:
        engine.select_model(args.model, args.provider)
    try:
        if targets:
            return asyncio.run(_run_comparison(engine, args.prompt, targets))
        return asyncio.run(_run_prompt(engine, args.prompt))
    except PrepChatError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
