"""Command line entry point for serving the image proxy."""

from __future__ import annotations

import argparse
import logging
from typing import Any

import uvicorn

from .app import create_app
from .settings import ProxySettings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="imageproxy", description="Caching proxy for remote images"
    )
    parser.add_argument("port", nargs="?", type=int, help="Port to listen on")
    parser.add_argument("--host", help="Address to listen on")
    parser.add_argument(
        "--size", type=int, help="Cache responses smaller than this many bytes"
    )
    parser.add_argument("--cache", help="Cache directory")
    parser.add_argument(
        "--nginx",
        help="nginx X-Accel-Redirect internal location for the cache directory",
    )
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["critical", "error", "warning", "info", "debug"],
        help="Logging verbosity",
    )
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> ProxySettings:
    """Apply explicit command line flags on top of environment settings."""
    overrides: dict[str, Any] = {
        "port": args.port,
        "host": args.host,
        "size_cap": args.size,
        "cache_dir": args.cache,
        "x_accel_redirect": args.nginx,
    }
    return ProxySettings(**{k: v for k, v in overrides.items() if v is not None})


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    settings = build_settings(args)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=args.log_level,
    )
