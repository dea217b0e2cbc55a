# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Prerender exception hierarchy.

All prerender-specific errors inherit from PrerenderError.  The render path
never lets these reach the HTTP layer: job failures become a 500
RenderResult at the pool boundary.
"""

from __future__ import annotations


class PrerenderError(Exception):
    """Base exception for all prerender errors."""


class BrowserError(PrerenderError):
    """Browser launch failure, or a navigation that produced no response."""


class PoolClosedError(PrerenderError):
    """Job submitted to (or still queued in) a pool that is shutting down."""


class SitemapError(PrerenderError):
    """Sitemap fetch or XML parse failure."""

    def __init__(self, message: str, *, sitemap_url: str = "") -> None:
        super().__init__(message)
        self.sitemap_url = sitemap_url


class StylesheetFetchError(PrerenderError):
    """A single out-of-band stylesheet fetch failed."""

    def __init__(self, message: str, *, href: str = "") -> None:
        super().__init__(message)
        self.href = href
