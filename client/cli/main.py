"""
Minimal line REPL.

Usage:
    clawtalk [--gateway URL] [--token TOKEN] [--model MODEL] [--data-dir DIR]

Commands:
    /new              start a new talk
    /save             save the active talk
    /talks            list saved talks
    /switch <id>      activate a talk (id prefix accepted)
    /open <gw-id>     import and open a gateway talk
    /sync             refresh gateway-backed talks now
    /quit             exit

Everything else is sent as a chat turn. Ctrl-C during a turn cancels it.
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Sequence

from config import resolve_config, validate_gateway_url
from context.merge import SnapshotError
from context.models import Message
from observability.logger import configure_log_file, log_event, set_enabled
from orchestrator.errors import StreamError, TurnInFlightError
from orchestrator.retry import friendly_error_message
from orchestrator.turns import TurnObserver
from session.client_session import ClientSession


class ConsoleObserver(TurnObserver):
    """Prints streaming output to stdout."""

    def __init__(self) -> None:
        self._printed = 0

    def on_stream(self, talk_id: str, text: str) -> None:
        if not text:
            if self._printed:
                sys.stdout.write("\n")
                sys.stdout.flush()
            self._printed = 0
            return
        if len(text) < self._printed:
            # Stream restarted (retry/fallback notice)
            sys.stdout.write("\n")
            self._printed = 0
        sys.stdout.write(text[self._printed:])
        sys.stdout.flush()
        self._printed = len(text)

    def on_message(self, talk_id: str, message: Message) -> None:
        if message.role == "system":
            print(f"* {message.content}")

    def on_notice(self, talk_id: str, text: str) -> None:
        print(f"  {text}")


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(prog="clawtalk", description="Terminal client for an LLM gateway")
    ap.add_argument("--gateway", help="Gateway URL (default: env/config/http://127.0.0.1:18789)")
    ap.add_argument("--token", help="Gateway bearer token")
    ap.add_argument("--model", help="Default model id")
    ap.add_argument("--data-dir", dest="data_dir", help="Local data directory (default ~/.clawtalk)")
    ap.add_argument("--log-file", help="Write JSONL events to this file instead of stderr")
    ap.add_argument("--poll", action="store_true", help="Poll the gateway for talk updates")
    return ap


async def _read_line(prompt: str) -> str | None:
    try:
        return await asyncio.to_thread(input, prompt)
    except EOFError:
        return None


async def _run_turn(session: ClientSession, text: str) -> None:
    task = asyncio.create_task(session.submit_turn(text))
    try:
        result = await asyncio.shield(task)
    except asyncio.CancelledError:
        session.cancel_turn()
        result = await task
    except TurnInFlightError as e:
        print(f"* {e}")
        return
    if result.outcome.value == "sentinel":
        print("* (no reply)")


async def _handle_command(session: ClientSession, line: str) -> bool:
    """Returns False when the REPL should exit."""
    cmd, _, arg = line.partition(" ")
    arg = arg.strip()

    if cmd == "/quit":
        return False
    if cmd == "/new":
        talk = session.new_talk()
        print(f"* new talk {talk.id[:8]}")
    elif cmd == "/save":
        session.save_talk()
        print("* saved")
    elif cmd == "/talks":
        for talk in session.store.list_saved_talks():
            marker = "*" if talk.id == session.active_talk_id else " "
            print(f"{marker} {talk.id[:8]}  {talk.topic_title or '(untitled)'}")
    elif cmd == "/switch":
        matches = [t for t in session.store.list_talks() if t.id.startswith(arg)] if arg else []
        if len(matches) != 1:
            print("* no unique talk matches")
        else:
            session.switch_talk(matches[0].id)
            print(f"* switched to {matches[0].id[:8]}")
    elif cmd == "/open":
        try:
            talk = await session.open_gateway_talk(arg) if arg else None
        except (StreamError, SnapshotError) as e:
            print(f"* {friendly_error_message(str(e) or type(e).__name__)}")
            return True
        print(f"* opened {talk.id}" if talk else "* gateway talk not found")
    elif cmd == "/sync":
        report = await session.sync_gateway_talks()
        print(f"* gateway {report.status.value}; refreshed {len(report.imported)}")
    else:
        print(f"* unknown command {cmd}")
    return True


async def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.log_file:
        configure_log_file(Path(args.log_file))

    config = resolve_config({
        "gateway": args.gateway,
        "token": args.token,
        "model": args.model,
        "data_dir": args.data_dir,
    })
    set_enabled(config.enable_json_logs)

    check = validate_gateway_url(config.gateway_url)
    if not check.ok:
        print(check.error, file=sys.stderr)
        return 2
    for warning in check.warnings:
        print(f"warning: {warning}", file=sys.stderr)

    session = ClientSession(config=config, observer=ConsoleObserver())
    await session.start(poll_gateway=args.poll)

    try:
        while True:
            line = await _read_line("> ")
            if line is None:
                break
            line = line.strip()
            if not line:
                continue
            if line.startswith("/"):
                if not await _handle_command(session, line):
                    break
                continue
            await _run_turn(session, line)
    except KeyboardInterrupt:
        log_event({"event_type": "cli_interrupted"})
    finally:
        await session.shutdown()
    return 0


def run() -> None:
    raise SystemExit(asyncio.run(main()))


if __name__ == "__main__":
    run()
