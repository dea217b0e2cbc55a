# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Sitemap source: sitemap URL -> ordered, de-duplicated list of page URLs.

Handles ``<urlset>`` and ``<sitemapindex>`` (nested indexes included) and
gzip-compressed payloads.  Child sitemaps are fetched in pages of ``limit``
concurrent requests with ``delay_ms`` between pages so the origin is not
hammered.  A failing child sitemap is logged and skipped; a failing root
sitemap raises SitemapError.
"""

from __future__ import annotations

import asyncio
import gzip
import logging
from dataclasses import dataclass, field

import httpx
from lxml import etree

from .browser_config import DEFAULT_USER_AGENT
from .errors import SitemapError

logger = logging.getLogger(__name__)

_DEFAULT_DELAY_MS = 3000
_DEFAULT_LIMIT = 5
_DEFAULT_TIMEOUT = 30.0
_MAX_SITEMAPS = 1000  # hard stop for runaway index chains
_GZIP_MAGIC = b"\x1f\x8b"


@dataclass
class ParsedSitemap:
    """Locations from one sitemap document."""

    source: str
    kind: str  # "urlset" | "sitemapindex"
    urls: list[str] = field(default_factory=list)
    children: list[str] = field(default_factory=list)


def _localname(el) -> str:
    return etree.QName(el).localname


def _child_loc(node) -> str | None:
    for child in node:
        if isinstance(child.tag, str) and _localname(child) == "loc" and child.text:
            loc = child.text.strip()
            if loc:
                return loc
    return None


def parse_sitemap(data: bytes, source: str = "") -> ParsedSitemap:
    """Parse a sitemap or sitemap index document.

    Raises:
        SitemapError: invalid XML or an unsupported root element.
    """
    if data[:2] == _GZIP_MAGIC:
        try:
            data = gzip.decompress(data)
        except OSError as exc:
            raise SitemapError(f"Invalid gzip payload in {source}: {exc}", sitemap_url=source) from exc

    parser = etree.XMLParser(resolve_entities=False, no_network=True, huge_tree=False)
    try:
        root = etree.fromstring(data, parser=parser)
    except etree.XMLSyntaxError as exc:
        raise SitemapError(f"Invalid XML in {source}: {exc}", sitemap_url=source) from exc

    kind = _localname(root)
    if kind not in ("urlset", "sitemapindex"):
        raise SitemapError(f"Unsupported sitemap root element in {source}: {kind}", sitemap_url=source)

    parsed = ParsedSitemap(source=source, kind=kind)
    entry_tag, target = ("url", parsed.urls) if kind == "urlset" else ("sitemap", parsed.children)

    for node in root:
        if not isinstance(node.tag, str) or _localname(node) != entry_tag:
            continue
        loc = _child_loc(node)
        if loc:
            target.append(loc)
    return parsed


class SitemapSource:
    """Fetches and flattens sitemaps with httpx."""

    def __init__(
        self,
        *,
        delay_ms: int = _DEFAULT_DELAY_MS,
        limit: int = _DEFAULT_LIMIT,
        timeout: float = _DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
        max_sitemaps: int = _MAX_SITEMAPS,
    ) -> None:
        if limit <= 0:
            raise ValueError(f"limit must be > 0, got {limit}")
        self._delay = delay_ms / 1000
        self._limit = limit
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._max_sitemaps = max_sitemaps

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                headers={"User-Agent": DEFAULT_USER_AGENT},
            )
        return self._client

    async def _fetch_one(self, sitemap_url: str) -> ParsedSitemap:
        try:
            resp = await self._get_client().get(sitemap_url)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise SitemapError(f"Sitemap fetch failed for {sitemap_url}: {exc}", sitemap_url=sitemap_url) from exc
        return parse_sitemap(resp.content, sitemap_url)

    async def fetch(self, sitemap_url: str) -> list[str]:
        """Return every page URL reachable from *sitemap_url*, in document order."""
        root = await self._fetch_one(sitemap_url)
        urls: list[str] = list(root.urls)
        seen_sitemaps = {sitemap_url}
        pending = [c for c in root.children if c not in seen_sitemaps]
        seen_sitemaps.update(pending)

        first_page = True
        while pending and len(seen_sitemaps) <= self._max_sitemaps:
            batch, pending = pending[: self._limit], pending[self._limit :]
            if not first_page and self._delay > 0:
                await asyncio.sleep(self._delay)
            first_page = False

            results = await asyncio.gather(*(self._fetch_one(u) for u in batch), return_exceptions=True)
            for child_url, result in zip(batch, results, strict=True):
                if isinstance(result, BaseException):
                    if not isinstance(result, Exception):
                        raise result
                    logger.warning("Child sitemap skipped: %s (%s)", child_url, result)
                    continue
                urls.extend(result.urls)
                for nested in result.children:
                    if nested not in seen_sitemaps:
                        seen_sitemaps.add(nested)
                        pending.append(nested)

        if pending:
            logger.warning("Sitemap index limit reached (%d); %d sitemaps ignored", self._max_sitemaps, len(pending))

        deduped = list(dict.fromkeys(urls))
        logger.info("Sitemap %s: %d urls from %d sitemaps", sitemap_url, len(deduped), len(seen_sitemaps))
        return deduped

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None
