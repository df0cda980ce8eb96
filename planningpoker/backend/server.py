"""Command-line entry point that serves the backend with uvicorn."""

from __future__ import annotations

import argparse
from dataclasses import replace

import structlog

from .config import BackendSettings, load_settings
from .logs import configure_logging


def parse_args(settings: BackendSettings, argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Planning poker session server")
    parser.add_argument("--host", default=settings.host)
    parser.add_argument("--port", type=int, default=settings.port)
    parser.add_argument("--log-level", default=settings.log_level)
    parser.add_argument("--log-format", choices=["console", "json"], default=settings.log_format)
    return parser.parse_args(argv)


def resolve_settings(argv: list[str] | None = None) -> BackendSettings:
    settings = load_settings()
    args = parse_args(settings, argv)
    return replace(
        settings,
        host=args.host,
        port=args.port,
        log_level=args.log_level.upper(),
        log_format=args.log_format,
    )


def main(argv: list[str] | None = None) -> int:
    settings = resolve_settings(argv)
    configure_logging(level=settings.log_level, log_format=settings.log_format)

    import uvicorn

    from .api import create_app

    structlog.get_logger(__name__).info("server_starting", host=settings.host, port=settings.port)
    uvicorn.run(create_app(settings=settings), host=settings.host, port=settings.port, log_config=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
