"""
Console front-end.

Reads user turns from stdin and prints the conversation log as it
changes. JSONL diagnostics go to stderr so they never interleave with
the conversation on stdout.

Commands:
    /tasks   list the session's tasks
    /end     evaluate and end the simulation
    /quit    leave (the session stays resumable)
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from typing import Sequence

from dotenv import load_dotenv

from kairo_sync.config import AppConfig, derive_ws_url
from kairo_sync.conversation.records import LogState, MessageRecord, Role
from kairo_sync.engine import ConversationEngine
from kairo_sync.observability import logger


def _stderr_print(line: str) -> None:
    sys.stderr.write(line + "\n")
    sys.stderr.flush()


def format_record(record: MessageRecord) -> str:
    if record.role is Role.SYSTEM:
        return f"[system] {record.content}"
    label = record.sender_label or record.role.value
    return f"{label}: {record.content}"


class LogPrinter:
    """
    Prints each record once, in log order.

    A record is printed when it is closed, or as it stands once a later
    record arrives, so a turn that never completes cannot hold back the
    rest of the log.
    """

    def __init__(self, out=None) -> None:
        self._out = out or sys.stdout
        self._printed = 0

    def __call__(self, prev: LogState, new: LogState) -> None:
        if len(new.records) < self._printed:
            self._printed = 0

        if new.agent_typing and not prev.agent_typing:
            self._write("... typing")

        records = new.records
        while self._printed < len(records):
            record = records[self._printed]
            if not record.closed and self._printed == len(records) - 1:
                break
            self._write(format_record(record))
            self._printed += 1

    def _write(self, line: str) -> None:
        self._out.write(line + "\n")
        self._out.flush()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kairo-sync",
        description="Chat with a role-play simulation from the terminal.",
    )
    parser.add_argument("--role", required=True, help='Role to simulate, e.g. "HR Executive"')
    parser.add_argument("--api-url", default=None, help="Override KAIRO_API_BASE_URL")
    parser.add_argument("--ws-url", default=None, help="Override KAIRO_WS_URL")
    return parser


async def run(engine: ConversationEngine, role: str) -> int:
    engine.log.subscribe(LogPrinter())

    session = await engine.start(role)
    if session is None:
        await engine.dispose()
        return 1

    loop = asyncio.get_running_loop()
    try:
        while True:
            line = await loop.run_in_executor(None, sys.stdin.readline)
            if not line:
                break
            text = line.strip()

            if text == "/quit":
                break
            if text == "/end":
                report = await engine.end_simulation()
                if report is not None:
                    print(json.dumps(report, indent=2, ensure_ascii=False))
                break
            if text == "/tasks":
                current = engine.session
                for task in current.tasks if current is not None else ():
                    print(f"- [{task.status.value}] {task.title} ({task.priority.value})")
                continue

            await engine.send(text)
    finally:
        await engine.dispose()

    return 0


def main(argv: Sequence[str] | None = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    config = AppConfig.load_from_env()
    if args.api_url or args.ws_url:
        api_url = args.api_url or config.api_base_url
        config = replace(
            config,
            api_base_url=api_url,
            ws_url=args.ws_url or (derive_ws_url(api_url) if args.api_url else config.ws_url),
        )

    logger.configure(enabled=config.enable_json_logs, sink=_stderr_print)

    engine = ConversationEngine(config)
    try:
        return asyncio.run(run(engine, args.role))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
