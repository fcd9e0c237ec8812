"""Command line entry point for the contractmatch web gateway."""

from __future__ import annotations

import argparse
import sys
from dataclasses import replace

from aiohttp import web
from loguru import logger

from .config import Settings
from .logs import configure_logging
from .web import create_app


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="contractmatch", description="contractmatch gateway")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the aiohttp gateway server")
    serve_parser.add_argument("--host", default=None, help="Host to bind")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind")
    serve_parser.add_argument("--db", default=None, help="Path to SQLite database for durability")
    serve_parser.add_argument("--blob-dir", default=None, help="Directory holding uploaded photos")
    serve_parser.add_argument("--public-base-url", default=None, help="URL prefix blobs are served from")
    serve_parser.add_argument("--log-level", default=None, help="loguru level name")
    return parser


def settings_from_args(args: argparse.Namespace, base: Settings | None = None) -> Settings:
    settings = base or Settings.from_env()
    overrides = {
        "host": args.host,
        "port": args.port,
        "db_path": args.db,
        "blob_dir": args.blob_dir,
        "public_base_url": args.public_base_url,
        "log_level": args.log_level,
    }
    return replace(settings, **{key: value for key, value in overrides.items() if value is not None})


def _run_serve(settings: Settings) -> int:
    configure_logging(settings.log_level)
    storage = settings.db_path or "memory"
    logger.info(f"Starting gateway on {settings.host}:{settings.port} (storage: {storage})")
    app = create_app(settings)
    web.run_app(app, host=settings.host, port=settings.port, print=None)
    return 0


def main(argv: list[str] | None = None) -> int:
    if argv is None:
        argv = sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)
    try:
        settings = settings_from_args(args)
    except ValueError as exc:
        parser.error(str(exc))
    if args.command == "serve":
        return _run_serve(settings)
    parser.error(f"unknown command: {args.command}")
    return 2


if __name__ == "__main__":  # pragma: no cover - convenience execution
    raise SystemExit(main())
