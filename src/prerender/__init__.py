# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Prerender: server-side rendering proxy with a bounded render pool and URL cache.

Turns a URL into a static HTML snapshot:
- render: headless Chromium loads the page with non-essential sub-resources blocked
- post-process: stylesheets inlined, scripts/iframes/preloads removed, <base> injected
- cache: successful snapshots stored under the query-free URL
"""

from __future__ import annotations

from dataclasses import dataclass
from urllib.parse import urlsplit, urlunsplit


@dataclass(frozen=True, slots=True)
class RenderResult:
    """Final HTML snapshot and the HTTP status of the navigation."""

    html: str
    status: int

    @property
    def ok(self) -> bool:
        return self.status == 200


@dataclass(frozen=True, slots=True)
class RenderRequest:
    """A single render request.

    ``url`` must be absolute.  Its query string doubles as a cache-bust
    signal: any query forces a fresh render of the query-free URL.
    """

    url: str
    cache_bust: str | None = None

    @property
    def key(self) -> str:
        return cache_key(self.url)

    @property
    def forces_render(self) -> bool:
        return self.cache_bust is not None or has_query(self.url)


def strip_query(url: str) -> str:
    """Drop query string and fragment, leaving the URL otherwise untouched."""
    return url.split("?", 1)[0].split("#", 1)[0]


def cache_key(url: str) -> str:
    """Strip query string and fragment: ``https://A.com/p?x=1#y`` -> ``https://a.com/p``.

    Scheme and host are lowercased; path case and trailing slash are preserved.
    """
    parts = urlsplit(url)
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, "", ""))


def has_query(url: str) -> bool:
    """True if *url* carries a query string (even an empty one, ``/p?``)."""
    return "?" in url.split("#", 1)[0]
