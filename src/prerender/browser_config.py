# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Chromium launch configuration for the render pool.

Leaf module: no prerender imports.
"""

from __future__ import annotations

import asyncio
import logging
import sys
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_VIEWPORT = {"width": 1280, "height": 800}

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) "
    "AppleWebKit/537.36 (KHTML, like Gecko) "
    "Chrome/120.0.0.0 Safari/537.36"
)

# Stylesheet fetch window plus slack, granted after navigation when no
# explicit job timeout is set.
DEFAULT_POST_NAVIGATION_BUDGET_MS = 15000


@dataclass(frozen=True, slots=True)
class BrowserConfig:
    """Browser launch + per-context configuration."""

    headless: bool = True
    executable_path: str | None = None  # CHROME_BIN; None = Playwright-managed Chromium
    ignore_https_errors: bool = True
    viewport_width: int = DEFAULT_VIEWPORT["width"]
    viewport_height: int = DEFAULT_VIEWPORT["height"]
    user_agent: str = DEFAULT_USER_AGENT
    navigation_timeout_ms: int = 25000
    job_timeout_ms: int | None = None  # None = navigation + DEFAULT_POST_NAVIGATION_BUDGET_MS

    def __post_init__(self) -> None:
        if self.job_timeout_ms is not None and self.job_timeout_ms < self.navigation_timeout_ms:
            raise ValueError(
                f"job_timeout_ms ({self.job_timeout_ms}) must be >= navigation_timeout_ms "
                f"({self.navigation_timeout_ms})"
            )

    @property
    def effective_job_timeout_ms(self) -> int:
        if self.job_timeout_ms is not None:
            return self.job_timeout_ms
        return self.navigation_timeout_ms + DEFAULT_POST_NAVIGATION_BUDGET_MS


def chromium_launch_args(config: BrowserConfig) -> list[str]:
    """Return Chromium launch arguments for containerised headless rendering."""
    args = [
        "--no-sandbox",
        "--disable-gpu",
        "--disable-dev-shm-usage",
        "--disable-extensions",
        "--disable-background-networking",
        "--disable-sync",
        "--no-first-run",
        "--disable-breakpad",
        "--no-pings",
        "--disable-component-update",
        "--noerrdialogs",
    ]
    if config.headless:
        args.append("--headless")
    return args


# ── Chromium auto-install ─────────────────────────────────────────

_chromium_install_attempted = False
_AUTO_INSTALL_TIMEOUT = 300  # seconds: Chromium ~140MB download


async def auto_install_chromium() -> bool:
    """Run ``playwright install chromium`` once per process.

    Returns True if install succeeded, False otherwise.
    """
    global _chromium_install_attempted  # noqa: PLW0603
    if _chromium_install_attempted:
        return False
    _chromium_install_attempted = True

    logger.info("Chromium not found: running 'playwright install chromium' …")
    try:
        proc = await asyncio.create_subprocess_exec(
            sys.executable,
            "-m",
            "playwright",
            "install",
            "chromium",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        _stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=_AUTO_INSTALL_TIMEOUT)
        if proc.returncode == 0:
            logger.info("Chromium installed successfully")
            return True
        logger.warning(
            "playwright install chromium failed (rc=%d): %s",
            proc.returncode,
            stderr.decode(errors="replace")[:500],
        )
        return False
    except TimeoutError:
        logger.warning("Chromium install timed out after %ds", _AUTO_INSTALL_TIMEOUT)
        return False
    except Exception:
        logger.warning("Chromium auto-install failed", exc_info=True)
        return False
