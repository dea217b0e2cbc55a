# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Shared test configuration and fixtures."""

try:
    import prerender  # noqa: F401
except ImportError:
    raise ImportError("prerender is not installed. Run: pip install -e '.[dev]'") from None

import pytest


@pytest.fixture(autouse=True)
def _block_real_browser(request, monkeypatch):
    """Safety net: prevent real Chromium launches in unit tests.

    Tests that need a pool patch ``prerender.worker_pool.async_playwright``
    explicitly: that patch takes priority over this fixture.  Tests that
    forget get a clear error instead of silently starting a browser.

    Opt out with ``@pytest.mark.allow_real_browser``.
    """
    if "allow_real_browser" in request.keywords:
        return

    def _no_real_playwright():
        raise RuntimeError(
            "Test tried to start a real Playwright instance. Patch 'prerender.worker_pool.async_playwright'."
        )

    monkeypatch.setattr("prerender.worker_pool.async_playwright", _no_real_playwright)
