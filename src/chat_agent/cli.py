"""Terminal chat loop.

Usage:

    chat-agent -p "Hello there"            # shared history (default)
    chat-agent -p "Hello" --no-global-context
    chat-agent -p "Go on" --session <id> --no-global-context

After each answer a ``>`` prompt reads the next message; an empty line,
``exit`` or ``quit`` ends the session.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import List, Optional, TextIO

from .agent import Agent, create_from_config
from .config import configure_logging, load_config
from .errors import TurnError
from .messages import render_output

logger = logging.getLogger(__name__)

EXIT_WORDS = {"exit", "quit"}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="chat-agent", description="Chat with a streaming LLM agent.")
    parser.add_argument("-p", "--prompt", required=True, help="First message to send")
    parser.add_argument(
        "-g",
        "--global-context",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Share one history across sessions (default: from config, true)",
    )
    parser.add_argument("-c", "--config", default=None, help="Path to a YAML config file")
    parser.add_argument("--session", default=None, help="Resume an existing session id")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    return parser


async def chat_loop(
    agent: Agent,
    prompt: str,
    *,
    stdin: TextIO = sys.stdin,
    stdout: TextIO = sys.stdout,
    stderr: TextIO = sys.stderr,
) -> None:
    """Run turns until the user enters an empty line, ``exit`` or ``quit``."""
    while True:
        try:
            stream = await agent.run(prompt)
            async for item in stream:
                stdout.write(render_output(item))
                stdout.flush()
        except TurnError as e:
            stderr.write(f"error: {e}\n")
            stderr.flush()
        stdout.write("\n")

        stdout.write("\n> ")
        stdout.flush()
        line = await asyncio.to_thread(stdin.readline)
        prompt = line.strip()
        if not prompt or prompt in EXIT_WORDS:
            break


async def _amain(args: argparse.Namespace) -> int:
    try:
        cfg = load_config(args.config)
        if args.global_context is not None:
            cfg.setdefault("storage", {})["use_global_context"] = args.global_context
        configure_logging(cfg, verbose=args.verbose)
        agent = await create_from_config(cfg, session_id=args.session)
    except Exception as e:
        logger.debug("startup failed", exc_info=True)
        sys.stderr.write(f"chat-agent: failed to start: {e}\n")
        return 1

    try:
        await chat_loop(agent, args.prompt)
    finally:
        aclose = getattr(agent.backend, "aclose", None)
        if aclose is not None:
            await aclose()
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_amain(args))
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
