"""Offline tools: replay captured socket frames through the reducers, inspect the stored token."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from dataclasses import asdict
from typing import Iterable, TextIO

from .config import ClientConfig
from .identity import DEFAULT_TOKEN_PATH, Identity, IdentityError, TokenStore
from .models import normalize_identity
from .session import ChatSession

DEFAULT_SELF = "me@example.com"


def replay(frames: Iterable[dict], self_identity: str, output: TextIO) -> ChatSession:
    """Feed socket frames to a network-less session and print the resulting conversation list."""

    session = ChatSession(Identity(email=normalize_identity(self_identity), token=""), ClientConfig())
    session.attach()
    for frame in frames:
        event = frame.get("t") if isinstance(frame, dict) else None
        if not isinstance(event, str) or not event:
            raise ValueError(f"frame without an event type: {frame!r}")
        session.hub.dispatch(event, frame.get("body", {}))
    for summary in session.conversation_list():
        output.write(json.dumps({"t": "conversation", **asdict(summary)}) + "\n")
    return session


def _load_frames(handle: TextIO) -> Iterable[dict]:
    content = handle.read()
    if not content.strip():
        return []

    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None

    if parsed is None:
        frames: list[dict] = []
        for line in content.splitlines():
            if line.strip():
                frames.append(json.loads(line))
        return frames

    if isinstance(parsed, list):
        return parsed
    return [parsed]


def _run_replay(args: argparse.Namespace, output: TextIO) -> int:
    frames = _load_frames(args.file or sys.stdin)
    replay(frames, args.self_identity, output)
    return 0


def _run_whoami(args: argparse.Namespace, output: TextIO) -> int:
    try:
        identity = TokenStore(args.token_file).load_identity()
    except IdentityError as exc:
        output.write(f"not signed in: {exc}\n")
        return 1
    output.write(identity.email + "\n")
    return 0


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]

    parser = argparse.ArgumentParser(prog="chatsync", description="Chat sync tools")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log merge decisions to stderr")
    subparsers = parser.add_subparsers(dest="command", required=True)

    replay_parser = subparsers.add_parser("replay", help="Replay captured socket frames offline")
    replay_parser.add_argument(
        "file",
        nargs="?",
        type=argparse.FileType("r"),
        default=None,
        help="JSON or JSON-lines frames file; defaults to stdin",
    )
    replay_parser.add_argument(
        "--self",
        dest="self_identity",
        default=DEFAULT_SELF,
        help="Email of the signed-in user the frames were captured for",
    )

    whoami_parser = subparsers.add_parser("whoami", help="Print the identity in the stored token")
    whoami_parser.add_argument("--token-file", default=str(DEFAULT_TOKEN_PATH), help="Path to the token file")

    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if args.command == "replay":
        return _run_replay(args, output or sys.stdout)
    return _run_whoami(args, output or sys.stdout)


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
