#!/usr/bin/env python3
"""Chat with the engine from a terminal.

Uses the same storage, tool servers and skills as the bot.

Usage examples:
    # Start (or resume) the "cli" conversation
    uv run python scripts/chat.py

    # Resume a specific chat by id
    uv run python scripts/chat.py --chat 12

    # Custom system prompt, no skills catalog
    uv run python scripts/chat.py --system "Be terse." --no-skills
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

# Allow running from project root
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from threadline.config import settings
from threadline.engine.loop import ToolStatus
from threadline.engine.turn import ChatEngine
from threadline.errors import ProviderError
from threadline.llm.client import AnthropicProvider


async def on_tool_status(name: str, status: ToolStatus) -> None:
    print(f"  [{status}] {name}", file=sys.stderr)


async def on_text_delta(delta: str) -> None:
    print(delta, end="", flush=True)


async def run(args: argparse.Namespace) -> None:
    if args.no_skills:
        settings.skills_enabled = False
    if args.no_memory:
        settings.memory_enabled = False
    engine = ChatEngine.create(AnthropicProvider())
    try:
        if args.chat:
            chat = await engine.store.get_chat(args.chat)
            if chat is None:
                print(f"ERROR: chat {args.chat} not found", file=sys.stderr)
                sys.exit(1)
        else:
            chat = await engine.store.get_or_create_chat_for_session(args.session)
        print(f"Chat #{chat.id} ({chat.title}). Ctrl-D to quit.")

        while True:
            try:
                line = await asyncio.to_thread(input, "\n> ")
            except EOFError:
                break
            if not line.strip():
                continue
            try:
                answer = await engine.run_turn(
                    chat.id,
                    line,
                    system_prompt=args.system,
                    on_tool_status=on_tool_status,
                    on_text_delta=on_text_delta,
                )
            except ProviderError as exc:
                print(f"\nERROR: {exc}", file=sys.stderr)
                continue
            print(f"\n{answer}")
    finally:
        await engine.close()


def main() -> None:
    parser = argparse.ArgumentParser(description="Terminal chat over the Threadline engine")
    parser.add_argument("--chat", type=int, help="Resume a chat by id")
    parser.add_argument("--session", default="cli", help="Session name (default: cli)")
    parser.add_argument("--system", default=None, help="System prompt for this session")
    parser.add_argument("--no-skills", action="store_true", help="Do not offer skill tools")
    parser.add_argument(
        "--no-memory", action="store_true", help="Do not recall or extract session memories"
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    args = parser.parse_args()

    logging.basicConfig(
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        level=logging.DEBUG if args.verbose else logging.WARNING,
    )
    asyncio.run(run(args))


if __name__ == "__main__":
    main()
