"""Command line smoke test: ``python -m derpai_aggregator "your question"``.

Provider keys and options are read from the environment (see ``Valves``).
Stream chunks are printed as they arrive, tagged with their provider, and
the final reply is printed last.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import Any, Optional, Sequence

from .core.config import Valves
from .pipe import INIT, ChatMessage, ChatPipe
from .streaming.event_emitter import CHAT, STREAM_CHUNK, STREAM_END, STREAM_ERROR


def _print_event(kind: str, payload: dict[str, Any]) -> None:
    tag = payload.get("provider", "")
    if payload.get("stage"):
        tag = f"{tag}/{payload['stage']}"
    if kind == STREAM_CHUNK:
        sys.stderr.write(f"[{tag}] {payload.get('text', '')}\n")
    elif kind == STREAM_END:
        sys.stderr.write(f"[{tag}] <end>\n")
    elif kind == STREAM_ERROR:
        sys.stderr.write(f"[{tag}] <error: {payload.get('error')}>\n")
    elif kind in (INIT, CHAT):
        sys.stdout.write(f"{payload.get('nickname')}: {payload.get('message')}\n")
    sys.stderr.flush()
    sys.stdout.flush()


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="derpai_aggregator", description=__doc__.splitlines()[0])
    parser.add_argument("question", help="Question to ask every configured provider.")
    parser.add_argument("--nickname", default="cli", help="Nickname of the asking user.")
    parser.add_argument(
        "--provider",
        action="append",
        dest="providers",
        help="Restrict the query to this provider id (repeatable).",
    )
    parser.add_argument("--quiet", action="store_true", help="Only print the final reply.")
    return parser.parse_args(argv)


async def _run(args: argparse.Namespace) -> int:
    pipe = ChatPipe(Valves())
    try:
        if not args.quiet:
            _print_event(INIT, pipe.init_message(args.nickname))
        sink = None if args.quiet else _print_event
        reply = await pipe.handle_message(
            None,
            ChatMessage(nickname=args.nickname, message=args.question),
            sink,
            providers=args.providers,
        )
        if args.quiet:
            sys.stdout.write(reply.message + "\n")
    finally:
        await pipe.close()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    return asyncio.run(_run(_parse_args(argv)))


if __name__ == "__main__":
    sys.exit(main())
