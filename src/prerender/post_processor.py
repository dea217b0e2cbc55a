# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Snapshot post-processing: turn a loaded page into self-contained static HTML.

Pipeline (order matters):
  1. Inject ``<base href>`` (query-stripped URL) as the first child of <head>
  2. Collect every ``<link rel="stylesheet">`` href, resolved against that base
  3. Fetch stylesheet bodies out-of-band with httpx (they were blocked during
     navigation); a failed fetch is logged and skipped
  4. Remove scripts (except JSON-LD), HTML imports, iframes, preloads and the
     original stylesheet links: scripts already ran during navigation
  5. Append one ``<style>`` holding the concatenated CSS to <head>

Steps 1-2 and 4-5 are pure lxml transforms on the serialized DOM.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from urllib.parse import urljoin, urlsplit

import httpx
import lxml.html
from lxml.html import HtmlElement

from . import strip_query
from .browser_config import DEFAULT_USER_AGENT
from .errors import StylesheetFetchError

logger = logging.getLogger(__name__)

_STRUCTURED_DATA_TYPE = "application/ld+json"
_REMOVED_LINK_RELS = frozenset({"import", "preload"})
_FETCHABLE_SCHEMES = ("http", "https")
_DEFAULT_STYLESHEET_TIMEOUT = 10.0


# ── Stylesheet fetching ──────────────────────────────────────────────


class StylesheetFetcher:
    """Out-of-band stylesheet downloader (independent of the page's own loading).

    Owns its ``httpx.AsyncClient`` unless one is injected.
    """

    def __init__(
        self,
        *,
        timeout: float = _DEFAULT_STYLESHEET_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self._timeout,
                follow_redirects=True,
                verify=False,  # nosec B501: mirrors ignore_https_errors on the browser side
                headers={"User-Agent": DEFAULT_USER_AGENT, "Accept": "text/css,*/*;q=0.1"},
            )
        return self._client

    async def fetch(self, href: str) -> str:
        """Return the text body of one stylesheet.

        Raises:
            StylesheetFetchError: network failure or non-2xx status.
        """
        try:
            resp = await self._get_client().get(href)
            resp.raise_for_status()
        except httpx.HTTPError as exc:
            raise StylesheetFetchError(f"{type(exc).__name__}: {exc}", href=href) from exc
        return resp.text

    async def fetch_all(self, hrefs: Iterable[str]) -> str:
        """Fetch all *hrefs* concurrently and concatenate bodies in document order."""
        hrefs = list(hrefs)
        if not hrefs:
            return ""
        results = await asyncio.gather(*(self.fetch(h) for h in hrefs), return_exceptions=True)
        parts: list[str] = []
        for href, result in zip(hrefs, results, strict=True):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Stylesheet skipped: href=%s error=%s", href, result)
                continue
            parts.append(result)
        return "".join(parts)

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


# ── Pure document transforms ─────────────────────────────────────────


def parse_document(html: str) -> HtmlElement:
    """Parse a full HTML document (bytes route avoids lxml's encoding-declaration error)."""
    parser = lxml.html.HTMLParser(encoding="utf-8", remove_comments=False)
    return lxml.html.document_fromstring(html.encode("utf-8"), parser=parser)


def ensure_head(doc: HtmlElement) -> HtmlElement:
    head = doc.find("head")
    if head is None:
        head = lxml.html.Element("head")
        doc.insert(0, head)
    return head


def _rel_tokens(el: HtmlElement) -> set[str]:
    return set((el.get("rel") or "").lower().split())


def _is_stylesheet_link(el: HtmlElement) -> bool:
    """Active stylesheet only: ``rel="alternate stylesheet"`` is left to the page."""
    tokens = _rel_tokens(el)
    return "stylesheet" in tokens and "alternate" not in tokens


def inject_base(doc: HtmlElement, base_href: str) -> HtmlElement:
    """Insert ``<base href=...>`` as the first child of <head>."""
    base = lxml.html.Element("base", href=base_href)
    ensure_head(doc).insert(0, base)
    return base


def stylesheet_hrefs(doc: HtmlElement, base_href: str) -> list[str]:
    """Absolute hrefs of every ``<link rel="stylesheet">``, in document order.

    Resolved against *base_href*: the injected <base> comes first in <head>,
    so it wins over any base tag the page ships.
    """
    hrefs: list[str] = []
    for link in doc.iter("link"):
        if not _is_stylesheet_link(link):
            continue
        href = (link.get("href") or "").strip()
        if not href:
            continue
        absolute = urljoin(base_href, href)
        if urlsplit(absolute).scheme not in _FETCHABLE_SCHEMES:
            logger.debug("Stylesheet href not fetchable: %s", absolute)
            continue
        hrefs.append(absolute)
    return hrefs


def strip_non_document_elements(doc: HtmlElement) -> int:
    """Remove executed/irrelevant elements.  Returns the number removed.

    Keeps ``<script type="application/ld+json">`` and alternate stylesheet
    links (they are never inlined).  ``drop_tree`` keeps tail text, so
    surrounding content is untouched.
    """
    doomed: list[HtmlElement] = []
    for el in doc.iter("script", "iframe", "link"):
        if el.tag == "script":
            if (el.get("type") or "").strip().lower() != _STRUCTURED_DATA_TYPE:
                doomed.append(el)
        elif el.tag == "iframe":
            doomed.append(el)
        elif _is_stylesheet_link(el) or _rel_tokens(el) & _REMOVED_LINK_RELS:
            doomed.append(el)
    for el in doomed:
        el.drop_tree()
    return len(doomed)


def append_style(doc: HtmlElement, css: str) -> HtmlElement:
    style = lxml.html.Element("style")
    style.text = css
    ensure_head(doc).append(style)
    return style


def serialize_document(doc: HtmlElement) -> str:
    doctype = doc.getroottree().docinfo.doctype or None
    return lxml.html.tostring(doc, encoding="unicode", method="html", doctype=doctype)


# ── Post-processor ───────────────────────────────────────────────────


class DocumentPostProcessor:
    """Runs the snapshot pipeline against a loaded Playwright page."""

    def __init__(self, fetcher: StylesheetFetcher | None = None) -> None:
        self._fetcher = fetcher or StylesheetFetcher()

    @property
    def fetcher(self) -> StylesheetFetcher:
        return self._fetcher

    async def process(self, page, url: str) -> str:
        """Return the final snapshot HTML for *page*, loaded from *url*."""
        html = await page.content()
        return await self.rewrite(html, url)

    async def rewrite(self, html: str, url: str) -> str:
        base_href = strip_query(url)
        doc = parse_document(html)
        inject_base(doc, base_href)
        hrefs = stylesheet_hrefs(doc, base_href)
        css = await self._fetcher.fetch_all(hrefs)
        removed = strip_non_document_elements(doc)
        append_style(doc, css)
        logger.debug(
            "Post-processed %s: stylesheets=%d css_bytes=%d removed=%d",
            base_href,
            len(hrefs),
            len(css),
            removed,
        )
        return serialize_document(doc)

    async def aclose(self) -> None:
        await self._fetcher.aclose()
