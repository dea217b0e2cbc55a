# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Process configuration from environment variables.

Leaf module: no prerender imports.  Every setting is optional; a value that
fails to parse is ignored (default kept) with a warning.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass

logger = logging.getLogger(__name__)

_TRUTHY = ("1", "true", "yes")
_FALSY = ("0", "false", "no")

JOB_TIMEOUT_SLACK_MS = 5000


@dataclass(frozen=True, slots=True)
class PrerenderConfig:
    """Immutable configuration for the render service."""

    cache_max_size: int = 1000
    cache_ttl: float = 86400.0  # seconds
    navigation_timeout_ms: int = 25000
    max_concurrency: int = 4
    job_timeout_ms: int | None = None  # None = derived, see effective_job_timeout_ms
    stylesheet_timeout: float = 10.0  # seconds per stylesheet fetch
    sitemap_delay_ms: int = 3000
    sitemap_limit: int = 5
    chrome_bin: str | None = None
    headless: bool = True
    host: str = "0.0.0.0"  # nosec B104
    port: int = 3000
    log_level: str = "INFO"
    log_json: bool = False

    def __post_init__(self) -> None:
        for name in (
            "cache_max_size",
            "cache_ttl",
            "navigation_timeout_ms",
            "max_concurrency",
            "stylesheet_timeout",
            "sitemap_limit",
        ):
            value = getattr(self, name)
            if value <= 0:
                raise ValueError(f"{name} must be > 0, got {value}")
        if self.sitemap_delay_ms < 0:
            raise ValueError(f"sitemap_delay_ms must be >= 0, got {self.sitemap_delay_ms}")
        if not 0 < self.port < 65536:
            raise ValueError(f"port must be in 1..65535, got {self.port}")
        if self.job_timeout_ms is not None and self.job_timeout_ms < self.navigation_timeout_ms:
            raise ValueError(
                f"job_timeout_ms ({self.job_timeout_ms}) must be >= navigation_timeout_ms "
                f"({self.navigation_timeout_ms})"
            )

    @property
    def effective_job_timeout_ms(self) -> int:
        """Cap on one render job: navigation plus one stylesheet round plus slack."""
        if self.job_timeout_ms is not None:
            return self.job_timeout_ms
        return self.navigation_timeout_ms + int(self.stylesheet_timeout * 1000) + JOB_TIMEOUT_SLACK_MS

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> PrerenderConfig:
        """Build a config from ``CACHE_MAXSIZE``, ``CACHE_TTL``, ``REQUEST_TIMEOUT`` and friends."""
        env = os.environ if environ is None else environ
        kwargs: dict = {}

        for var, field_name, cast in (
            ("CACHE_MAXSIZE", "cache_max_size", int),
            ("CACHE_TTL", "cache_ttl", float),
            ("REQUEST_TIMEOUT", "navigation_timeout_ms", int),
            ("MAX_CONCURRENCY", "max_concurrency", int),
            ("JOB_TIMEOUT", "job_timeout_ms", int),
            ("STYLESHEET_TIMEOUT", "stylesheet_timeout", float),
            ("SITEMAP_DELAY", "sitemap_delay_ms", int),
            ("SITEMAP_LIMIT", "sitemap_limit", int),
            ("PORT", "port", int),
        ):
            raw = env.get(var, "").strip()
            if not raw:
                continue
            try:
                kwargs[field_name] = cast(raw)
            except ValueError:
                logger.warning("Ignoring invalid %s=%r", var, raw)

        chrome_bin = env.get("CHROME_BIN", "").strip()
        if chrome_bin:
            kwargs["chrome_bin"] = chrome_bin

        host = env.get("HOST", "").strip()
        if host:
            kwargs["host"] = host

        headless = env.get("HEADLESS", "").strip().lower()
        if headless in _FALSY:
            kwargs["headless"] = False
        elif headless in _TRUTHY:
            kwargs["headless"] = True

        level = env.get("LOG_LEVEL", "").strip().upper()
        if level:
            kwargs["log_level"] = level

        kwargs["log_json"] = env.get("LOG_JSON", "").strip().lower() in _TRUTHY

        return cls(**kwargs)
