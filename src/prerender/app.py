# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Starlette HTTP boundary.

Routes:
    GET /render?url=...                 rendered HTML with the page's own status
    GET /map-render?url=...&version=... enqueue a sitemap for cache warming
    GET /test                           plain "test" liveness check
    GET /health                         pool + cache snapshot (JSON)

URL validation happens here; the render core assumes an absolute http(s) URL.
Components are built in the lifespan unless injected through ``create_app``.
"""

from __future__ import annotations

import logging
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from urllib.parse import urlsplit

import structlog
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.middleware.gzip import GZipMiddleware
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, PlainTextResponse, Response
from starlette.routing import Route

from . import RenderRequest
from .browser_config import BrowserConfig
from .cache import RenderCache
from .config import PrerenderConfig
from .coordinator import RenderCoordinator
from .errors import SitemapError
from .post_processor import DocumentPostProcessor, StylesheetFetcher
from .response_headers import CorsHeaderMiddleware
from .sitemap import SitemapSource
from .warmer import SitemapWarmer
from .worker_pool import RenderWorkerPool

logger = logging.getLogger(__name__)

RENDER_USAGE = "Invalid url param: Example: ?url=https://example.com"
MAP_RENDER_USAGE = "Invalid url param: Example: ?url=https://example.com/sitemap.xml&version=3.0.0"

_ALLOWED_SCHEMES = ("http", "https")


def is_absolute_url(url: str | None) -> bool:
    if not url:
        return False
    parts = urlsplit(url.strip())
    return parts.scheme.lower() in _ALLOWED_SCHEMES and bool(parts.netloc)


# ── Component wiring ─────────────────────────────────────────────────


@dataclass(slots=True)
class Services:
    """Long-lived components shared by every request."""

    coordinator: RenderCoordinator
    warmer: SitemapWarmer
    sitemap_source: SitemapSource

    async def aclose(self) -> None:
        await self.warmer.aclose()
        await self.sitemap_source.aclose()
        await self.coordinator.close()


async def build_services(config: PrerenderConfig) -> Services:
    """Launch the render pool and compose the pipeline from *config*."""
    browser_config = BrowserConfig(
        headless=config.headless,
        executable_path=config.chrome_bin,
        navigation_timeout_ms=config.navigation_timeout_ms,
        job_timeout_ms=config.effective_job_timeout_ms,
    )
    pool = await RenderWorkerPool.launch(max_concurrency=config.max_concurrency, config=browser_config)
    coordinator = RenderCoordinator(
        pool,
        RenderCache(max_entries=config.cache_max_size, ttl=config.cache_ttl),
        DocumentPostProcessor(StylesheetFetcher(timeout=config.stylesheet_timeout)),
        navigation_timeout_ms=config.navigation_timeout_ms,
    )
    return Services(
        coordinator=coordinator,
        warmer=SitemapWarmer(coordinator),
        sitemap_source=SitemapSource(delay_ms=config.sitemap_delay_ms, limit=config.sitemap_limit),
    )


def _services(request: Request) -> Services:
    return request.app.state.services


# ── Handlers ─────────────────────────────────────────────────────────


async def ping_route(request: Request) -> Response:
    return PlainTextResponse("test")


async def render_route(request: Request) -> Response:
    url = request.query_params.get("url")
    if not is_absolute_url(url):
        return PlainTextResponse(RENDER_USAGE, status_code=400)
    url = url.strip()

    structlog.contextvars.bind_contextvars(request_id=uuid.uuid4().hex[:8], url=url)
    started = time.monotonic()
    try:
        result = await _services(request).coordinator.resolve(RenderRequest(url=url))
        logger.info(
            "URL_START:%s status=%d %.1fms",
            url,
            result.status,
            (time.monotonic() - started) * 1000,
        )
        return HTMLResponse(result.html, status_code=result.status)
    finally:
        structlog.contextvars.unbind_contextvars("request_id", "url")


async def map_render_route(request: Request) -> Response:
    sitemap_url = request.query_params.get("url")
    if not is_absolute_url(sitemap_url):
        return PlainTextResponse(MAP_RENDER_USAGE, status_code=400)
    sitemap_url = sitemap_url.strip()
    version = request.query_params.get("version") or str(int(time.time() * 1000))

    services = _services(request)
    try:
        urls = await services.sitemap_source.fetch(sitemap_url)
    except SitemapError as exc:
        logger.warning("Sitemap rejected: %s", exc)
        return PlainTextResponse(str(exc), status_code=500)

    services.warmer.schedule(urls, f"v={version}")
    logger.info("Sitemap %s queued: %d urls (version=%s)", sitemap_url, len(urls), version)
    return PlainTextResponse(f"The sitemap now in queue, number of urls to ad is {len(urls)}")


async def health_route(request: Request) -> Response:
    coordinator = _services(request).coordinator
    pool_health = coordinator.pool.health()
    return JSONResponse(
        {
            "status": "ok" if pool_health.browser_connected else "degraded",
            "pool": pool_health.as_dict(),
            "cache": {
                "size": len(coordinator.cache),
                "max_entries": coordinator.cache.max_entries,
                **coordinator.cache.stats.as_dict(),
            },
            "inflight": coordinator.inflight_count,
        },
        status_code=200 if pool_health.browser_connected else 503,
    )


# ── App factory ──────────────────────────────────────────────────────


def create_app(
    config: PrerenderConfig | None = None,
    *,
    services: Services | None = None,
) -> Starlette:
    """Build the ASGI app.

    With *services* given (tests, embedding) the app uses them as-is and
    leaves their lifecycle to the caller; otherwise the lifespan builds them
    from *config* and tears them down on shutdown.
    """
    config = config or PrerenderConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if app.state.services is not None:
            yield
            return
        app.state.services = await build_services(config)
        try:
            yield
        finally:
            await app.state.services.aclose()
            app.state.services = None

    app = Starlette(
        routes=[
            Route("/test", ping_route, methods=["GET"]),
            Route("/render", render_route, methods=["GET"]),
            Route("/map-render", map_render_route, methods=["GET"]),
            Route("/health", health_route, methods=["GET"]),
        ],
        middleware=[
            Middleware(CorsHeaderMiddleware),
            Middleware(GZipMiddleware, minimum_size=500),
        ],
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.config = config
    return app
