"""Command-line entry point for the Companion session core.

    companion attach SESSION_ID   follow a live session as a text outline
    companion outline FILE        reconstruct a saved JSON transcript
    companion export FILE         print a saved transcript as markdown
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from companion.adapters.client import CompanionClient
from companion.engine.config import CompanionConfig
from companion.engine.errors import CompanionError, TransportConnectError
from companion.engine.yaml_config import discover_config_path, load_yaml_config
from companion.shared.feed import outline, reconstruct
from companion.shared.services.transcript_export import export_markdown, load_transcript

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"


def _configure_logging(level: str, log_file: Path | None = None) -> None:
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(_LOG_FORMAT)
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)


def _load_config(args: argparse.Namespace) -> CompanionConfig:
    config = CompanionConfig.from_env()
    path = Path(args.config) if getattr(args, "config", None) else discover_config_path()
    if path is not None:
        config = load_yaml_config(path, base=config)
    if getattr(args, "url", None):
        config.server_url = args.url
    if getattr(args, "verbose", False):
        config.log_level = "DEBUG"
    return config


def _status_line(session) -> str:
    line = (
        f"-- {session.connection_status.value}"
        f" live={'yes' if session.live else 'no'}"
        f" run={session.run_status.value}"
    )
    remedy = session.remedy()
    if remedy is not None:
        line += f" (remedy: {remedy.value})"
    warning = session.context_warning()
    if warning is not None:
        line += f" [context {session.context_used_percent:.0f}% {warning}]"
    return line


async def _attach(config: CompanionConfig, session_id: str) -> int:
    changed = asyncio.Event()
    async with CompanionClient(config) as client:
        client.subscribe(lambda _sid: changed.set(), session_id)
        try:
            await client.open_session(session_id)
        except TransportConnectError as exc:
            print(f"error: {exc}", file=sys.stderr)
            return 1

        printed: list[str] = []
        last_status = ""
        while True:
            await changed.wait()
            changed.clear()
            session = client.registry.get_session(session_id)
            if session is None:
                return 0

            status = _status_line(session)
            if status != last_status:
                print(status, flush=True)
                last_status = status

            for request in client.pending_permissions(session_id):
                logger.info(
                    "Pending permission request_id=%s tool=%s",
                    request.request_id[:8], request.tool_name or "?",
                )

            lines = outline(client.feed(session_id))
            # Tool groups grow in place, so reprint from the first changed line
            start = 0
            while start < min(len(lines), len(printed)) and lines[start] == printed[start]:
                start += 1
            for line in lines[start:]:
                print(line, flush=True)
            printed = lines


def _cmd_attach(args: argparse.Namespace) -> int:
    config = _load_config(args)
    log_file = Path.home() / ".companion" / "logs" / "companion.log"
    _configure_logging(config.log_level, log_file)
    logger.info(
        "Attaching session=%s server=%s log=%s",
        args.session_id[:8], config.server_url, log_file,
    )
    try:
        return asyncio.run(_attach(config, args.session_id))
    except KeyboardInterrupt:
        return 130


def _cmd_outline(args: argparse.Namespace) -> int:
    config = _load_config(args)
    _configure_logging(os.getenv("COMPANION_LOG_LEVEL", "WARNING"))
    messages = load_transcript(args.file)
    for line in outline(reconstruct(messages, config.task_tool_name)):
        print(line)
    return 0


def _cmd_export(args: argparse.Namespace) -> int:
    _configure_logging(os.getenv("COMPANION_LOG_LEVEL", "WARNING"))
    print(export_markdown(load_transcript(args.file)))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="companion",
        description="Companion — session protocol core for agent conversations",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    attach = sub.add_parser("attach", help="Connect to a session and follow its feed")
    attach.add_argument("session_id", metavar="SESSION_ID")
    attach.add_argument(
        "--url", metavar="URL",
        help="Agent host base URL (default: COMPANION_SERVER_URL or http://127.0.0.1:3456)",
    )
    attach.add_argument(
        "--config", metavar="PATH",
        help="YAML config file (default: .companion/companion.yaml or companion.yaml)",
    )
    attach.add_argument(
        "--verbose", "-v", action="store_true",
        help="Log at DEBUG level",
    )
    attach.set_defaults(func=_cmd_attach)

    outline_cmd = sub.add_parser("outline", help="Print the feed outline of a JSON transcript")
    outline_cmd.add_argument("file", metavar="FILE")
    outline_cmd.add_argument("--config", metavar="PATH", help="YAML config file")
    outline_cmd.set_defaults(func=_cmd_outline)

    export = sub.add_parser("export", help="Print a JSON transcript as markdown")
    export.add_argument("file", metavar="FILE")
    export.set_defaults(func=_cmd_export)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        code = args.func(args)
    except (CompanionError, OSError, ValueError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        code = 1
    sys.exit(code)


if __name__ == "__main__":
    main()
