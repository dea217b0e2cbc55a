# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Process entry point: ``prerender`` console script.

Settings come from environment variables (see ``PrerenderConfig.from_env``);
CLI flags override them.
"""

from __future__ import annotations

import argparse
import dataclasses
import functools
import logging
import sys

from .config import PrerenderConfig

logger = logging.getLogger("prerender.server")


def parse_server_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="prerender", description="Server-side rendering proxy with a render cache")
    parser.add_argument("--host", default=None, help="Bind address (env HOST, default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (env PORT, default: 3000)")
    parser.add_argument(
        "--max-concurrency",
        type=int,
        default=None,
        help="Parallel render contexts (env MAX_CONCURRENCY, default: 4)",
    )
    parser.add_argument(
        "--log-json",
        action="store_true",
        default=False,
        help="Emit JSON log lines (env LOG_JSON)",
    )
    parser.add_argument(
        "--drain-timeout",
        type=int,
        default=30,
        help="Graceful shutdown timeout seconds (default: 30)",
    )
    args, _ = parser.parse_known_args(argv)
    return args


def build_config(args: argparse.Namespace, base: PrerenderConfig | None = None) -> PrerenderConfig:
    """Apply CLI overrides on top of the environment config."""
    config = base or PrerenderConfig.from_env()
    overrides: dict = {}
    if args.host:
        overrides["host"] = args.host
    if args.port is not None:
        overrides["port"] = args.port
    if args.max_concurrency is not None:
        overrides["max_concurrency"] = args.max_concurrency
    if args.log_json:
        overrides["log_json"] = True
    return dataclasses.replace(config, **overrides) if overrides else config


async def _run_http_server(config: PrerenderConfig, *, drain_timeout: int = 30) -> None:
    """Serve the app with uvicorn; the app lifespan owns the render pool."""
    import uvicorn

    from .app import create_app

    uv_config = uvicorn.Config(
        create_app(config),
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        log_config=None,  # keep the structlog bridge
        timeout_graceful_shutdown=drain_timeout,
    )
    server = uvicorn.Server(uv_config)
    await server.serve()


def main(argv: list[str] | None = None) -> None:
    """Entry point for the render server."""
    args = parse_server_args(argv if argv is not None else sys.argv[1:])
    try:
        config = build_config(args)
    except ValueError as exc:
        print(f"prerender: invalid configuration: {exc}", file=sys.stderr)
        sys.exit(2)

    # Configure structlog BEFORE any log output
    from .logging_config import configure as configure_logging

    configure_logging(json_output=config.log_json, level=config.log_level)

    logger.info(
        "Starting prerender server (host=%s, port=%d, max_concurrency=%d, cache_max=%d, cache_ttl=%.0fs)",
        config.host,
        config.port,
        config.max_concurrency,
        config.cache_max_size,
        config.cache_ttl,
    )
    import anyio

    anyio.run(functools.partial(_run_http_server, config, drain_timeout=args.drain_timeout))


if __name__ == "__main__":
    main()
