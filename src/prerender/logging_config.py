# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Log output for the render service.

Two modes, picked by ``LOG_JSON`` / ``--log-json``:

* console (default): coloured key=value lines for a developer watching
  ``prerender`` in a terminal;
* JSON lines: one object per record for the container's log collector.

Both modes go to stderr through a single root handler.  Module loggers
(``logging.getLogger(__name__)``) and uvicorn's own loggers share it, and
the ``request_id`` / ``url`` pair that ``/render`` binds as structlog
contextvars is merged into every record emitted while that request runs.

Leaf module: no prerender imports, so ``server.main`` can call it first.
"""

from __future__ import annotations

import logging
import sys

import structlog

_UVICORN_LOGGERS = ("uvicorn", "uvicorn.error", "uvicorn.access")


def _shared_processors() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def configure(*, json_output: bool = False, level: str = "INFO") -> None:
    """Install the root handler for *level* in console or JSON mode.

    Safe to call more than once: the root and uvicorn handlers are replaced,
    not stacked.  An unknown *level* falls back to INFO.
    """
    shared = _shared_processors()
    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    renderer = structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=shared,
        )
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    for name in _UVICORN_LOGGERS:
        uvicorn_logger = logging.getLogger(name)
        uvicorn_logger.handlers.clear()
        uvicorn_logger.propagate = True
