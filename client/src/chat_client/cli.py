"""Terminal front end for a chat session."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Optional, Set, TextIO

from .config import SessionConfig
from .errors import SendPreconditionError
from .models import KIND_GROUP, KIND_PRIVATE, ConnectionState, Message
from .session import ChatSession


def format_message(message: Message) -> str:
    target = f"#{message.group}" if message.group else f"@{message.to or ''}"
    return f"[{message.time}] {message.sender} -> {target}: {message.content}"


def _select_target(session: ChatSession, args: argparse.Namespace) -> None:
    if args.group:
        session.select_conversation(KIND_GROUP, args.group)
    elif args.user:
        session.select_conversation(KIND_PRIVATE, args.user)


def _build_session(args: argparse.Namespace, **kwargs) -> ChatSession:
    config = SessionConfig.from_env(base_url=args.base_url)
    return ChatSession(args.token, args.username, config=config, **kwargs)


async def _wait_for(event: asyncio.Event, timeout: float) -> bool:
    try:
        await asyncio.wait_for(event.wait(), timeout)
    except asyncio.TimeoutError:
        return False
    return True


async def _run_watch(args: argparse.Namespace, output: TextIO) -> int:
    printed: Set[str] = set()

    def render(session: ChatSession) -> None:
        for message in session.messages:
            if message.is_temp or message.id in printed:
                continue
            printed.add(message.id)
            if args.json:
                output.write(json.dumps(message.to_dict(), ensure_ascii=False) + "\n")
            else:
                output.write(format_message(message) + "\n")
        output.flush()

    session = _build_session(args, on_change=render)
    await session.start()
    if session.ended:
        output.write(f"error: {session.error}\n")
        return 1
    _select_target(session, args)
    try:
        if args.seconds:
            await asyncio.sleep(args.seconds)
        else:
            await asyncio.Event().wait()
    finally:
        await session.logout()
    return 0


async def _run_send(args: argparse.Namespace, output: TextIO) -> int:
    opened = asyncio.Event()
    settled = asyncio.Event()
    pending_id: Optional[str] = None

    def track(session: ChatSession) -> None:
        if session.status.state is ConnectionState.OPEN:
            opened.set()
        if pending_id is not None and not any(
            message.is_temp and message.id == pending_id for message in session.all_messages
        ):
            settled.set()

    session = _build_session(args, on_change=track)
    await session.start()
    try:
        if session.ended:
            output.write(f"error: {session.error}\n")
            return 1
        _select_target(session, args)
        if not await _wait_for(opened, args.timeout):
            output.write(f"error: not connected ({session.status.error or session.status.state.value})\n")
            return 1
        try:
            sent = await session.send(args.message)
        except SendPreconditionError as exc:
            output.write(f"error: {exc}\n")
            return 2
        if not sent:
            output.write(f"error: {session.error}\n")
            return 1
        pending = [m.id for m in session.all_messages if m.is_temp and m.content == args.message]
        if pending:
            pending_id = pending[-1]
            track(session)
        else:
            settled.set()
        if not await _wait_for(settled, args.timeout):
            output.write("sent, but the server did not confirm it in time\n")
            return 1
        output.write("delivered\n")
        return 0
    finally:
        await session.logout()


def main(argv: list[str] | None = None, output: TextIO | None = None) -> int:
    """Entry point for CLI commands."""

    if argv is None:
        argv = sys.argv[1:]
    output = output or sys.stdout

    parser = argparse.ArgumentParser(description="Chat session client")
    parser.add_argument("--base-url", default=None, help="REST endpoint; defaults to $CHAT_BASE_URL")
    parser.add_argument("--token", default=os.environ.get("CHAT_TOKEN", ""), help="Bearer token")
    parser.add_argument("--username", default=os.environ.get("CHAT_USERNAME", ""), help="Local username")
    parser.add_argument("--log-level", default="WARNING", help="Python logging level")
    subparsers = parser.add_subparsers(dest="command", required=True)

    watch_parser = subparsers.add_parser("watch", help="Print messages as they arrive")
    send_parser = subparsers.add_parser("send", help="Send one message and wait for confirmation")
    for sub in (watch_parser, send_parser):
        target = sub.add_mutually_exclusive_group()
        target.add_argument("--group", default=None, help="Group conversation")
        target.add_argument("--user", default=None, help="Private conversation peer")
    watch_parser.add_argument("--seconds", type=float, default=0, help="Stop after this many seconds")
    watch_parser.add_argument("--json", action="store_true", help="Print one JSON object per message")
    send_parser.add_argument("message", help="Message text")
    send_parser.add_argument("--timeout", type=float, default=15.0, help="Seconds to wait for connect/confirm")

    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    runner = _run_watch if args.command == "watch" else _run_send
    try:
        return asyncio.run(runner(args, output))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
