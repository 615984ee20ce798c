"""Command-line entrypoints for the daebug server."""
from __future__ import annotations

import argparse
import json
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

import uvicorn
from dotenv import load_dotenv

from daebug.config import DEFAULT_LOGGING, DEFAULT_SETTINGS, Settings, load_settings
from daebug.errors import LogParseError
from daebug.observability.log import configure_logging
from daebug.parse.markdown import find_requests, parse_document
from daebug.storage.layout import LogLayout


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="daebug", description="Markdown-log remote REPL server")
    parser.add_argument("--config", default=str(DEFAULT_SETTINGS), help="Path to settings TOML")
    parser.add_argument("--logging", default=str(DEFAULT_LOGGING), help="Path to logging YAML")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP server and log watcher")
    serve.add_argument("--root", help="Directory holding daebug.md and daebug/")
    serve.add_argument("--host", help="Interface to bind")
    serve.add_argument("--port", type=int, help="Port to listen on")
    serve.add_argument("--no-watch", action="store_true", help="Disable filesystem watching")

    status = sub.add_parser("status", help="Summarise page logs under the root")
    status.add_argument("--root", help="Directory holding daebug/")

    return parser


def _apply_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    changes: Dict[str, object] = {}
    if getattr(args, "root", None):
        changes["root"] = Path(args.root)
    if getattr(args, "host", None):
        changes["host"] = args.host
    if getattr(args, "port", None):
        changes["port"] = args.port
    if getattr(args, "no_watch", False):
        changes["watch"] = False
    return replace(settings, **changes) if changes else settings


def summarise_logs(root: Path) -> List[Dict[str, object]]:
    """Describe each page log: size, request count and pending requests."""
    layout = LogLayout(root)
    summary: List[Dict[str, object]] = []
    for path in layout.page_files():
        entry: Dict[str, object] = {"page": path.stem, "path": str(path), "bytes": path.stat().st_size}
        try:
            requests = find_requests(parse_document(path.read_text(encoding="utf-8")), path.stem)
        except LogParseError as exc:
            entry["error"] = str(exc)
        else:
            entry["requests"] = len(requests)
            entry["unanswered"] = sum(1 for request in requests if not request.has_footer)
        summary.append(entry)
    return summary


def run_server(settings: Settings) -> None:
    from daebug.web.app import create_app

    settings.root.mkdir(parents=True, exist_ok=True)
    app = create_app(settings)
    print(f"👾Daebug listening on http://{settings.host}:{settings.port}/")
    uvicorn.run(app, host=settings.host, port=settings.port, log_config=None)


def main(argv: Optional[List[str]] = None) -> None:
    """Entry point for the CLI."""
    load_dotenv()
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    configure_logging(Path(args.logging))
    settings = _apply_overrides(load_settings(Path(args.config)), args)

    if args.command == "status":
        print(json.dumps(summarise_logs(settings.root), indent=2))
        return

    if args.command == "serve":
        run_server(settings)


if __name__ == "__main__":
    main()
