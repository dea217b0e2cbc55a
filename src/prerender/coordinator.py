# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""RenderCoordinator: cache lookup, render job composition, cache write.

``resolve(url)``:
  1. key = URL without query/fragment
  2. no query at all -> cache hit returns immediately
  3. otherwise (miss, or any query = cache-bust) -> pool job on *key*:
     intercept sub-resources via resource_filter, goto(key, networkidle),
     post-process, extract HTML + status
  4. status 200 -> cache[key] = result (overwrite)
  5. return result whatever its status

Renders run as coordinator-owned tasks: a caller that gives up does not
cancel the render, which still lands in the cache.  Concurrent resolves of
the same key share one in-flight render when ``coalesce`` is on.

This is the only writer of the RenderCache.
"""

from __future__ import annotations

import asyncio
import functools
import logging

from playwright.async_api import Page, Request, Route

from . import RenderRequest, RenderResult
from .cache import RenderCache
from .errors import BrowserError, PoolClosedError
from .post_processor import DocumentPostProcessor
from .render_stages import RenderStages
from .resource_filter import ResourceDecision, decide
from .worker_pool import RenderWorkerPool

logger = logging.getLogger(__name__)

_DEFAULT_NAVIGATION_TIMEOUT_MS = 25000


def _is_main_document(request: Request) -> bool:
    """Top-level navigation (including redirect hops): never a sub-resource."""
    return request.is_navigation_request() and request.frame.parent_frame is None


async def intercept_request(route: Route) -> None:
    """Playwright route handler: abort blocked sub-resources, continue the rest."""
    request = route.request
    if _is_main_document(request):
        await route.continue_()
        return
    if decide(request.resource_type, request.url) is ResourceDecision.BLOCK:
        await route.abort("blockedbyclient")
        return
    await route.continue_()


class RenderCoordinator:
    """Composes RenderCache, RenderWorkerPool and DocumentPostProcessor."""

    def __init__(
        self,
        pool: RenderWorkerPool,
        cache: RenderCache,
        post_processor: DocumentPostProcessor | None = None,
        *,
        navigation_timeout_ms: int = _DEFAULT_NAVIGATION_TIMEOUT_MS,
        coalesce: bool = True,
    ) -> None:
        self._pool = pool
        self._cache = cache
        self._post_processor = post_processor or DocumentPostProcessor()
        self._navigation_timeout_ms = navigation_timeout_ms
        self._coalesce = coalesce
        self._inflight: dict[str, asyncio.Task] = {}
        self._tasks: set[asyncio.Task] = set()
        self._closed = False

    @property
    def pool(self) -> RenderWorkerPool:
        return self._pool

    @property
    def cache(self) -> RenderCache:
        return self._cache

    @property
    def inflight_count(self) -> int:
        return len(self._tasks)

    # ── Entry point ──────────────────────────────────────────────────

    async def resolve(self, request: RenderRequest | str) -> RenderResult:
        """Return the snapshot for *request*, rendering only when needed."""
        if isinstance(request, str):
            request = RenderRequest(url=request)
        key = request.key

        if not request.forces_render:
            cached = self._cache.get(key)
            if cached is not None:
                logger.debug("Cache hit: %s", key)
                return cached
        elif key in self._cache:
            logger.debug("Cache-busting render will replace cached %s", key)

        task = self._inflight.get(key) if self._coalesce else None
        if task is None:
            task = asyncio.get_running_loop().create_task(self._render_and_store(key), name=f"prerender-render:{key}")
            self._tasks.add(task)
            if self._coalesce:
                self._inflight[key] = task
            task.add_done_callback(functools.partial(self._forget, key))
        else:
            logger.debug("Joining in-flight render: %s", key)
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if self._inflight.get(key) is task:
            del self._inflight[key]

    async def _render_and_store(self, key: str) -> RenderResult:
        try:
            result = await self._pool.execute(key, self.render_page)
        except PoolClosedError as exc:
            logger.warning("Render rejected for %s: %s", key, exc)
            return RenderResult(html=f"PoolClosedError: {exc}", status=500)
        except Exception as exc:
            logger.exception("Render pool failure for %s", key)
            return RenderResult(html=f"{type(exc).__name__}: {exc}", status=500)

        if result.ok:
            try:
                self._cache.set(key, result)
            except Exception:
                logger.warning("Cache write failed for %s; result not cached", key, exc_info=True)
        else:
            logger.info("Not caching %s (status=%d)", key, result.status)
        return result

    # ── Render job (runs inside a pool worker) ───────────────────────

    async def render_page(self, page: Page, key: str, stages: RenderStages) -> RenderResult:
        """Navigate *page* to *key* with interception, then post-process.

        Progress is marked on the pool's *stages* so a job timeout names the
        step that stalled.
        """
        await page.route("**/*", intercept_request)

        stages.enter("navigation")
        response = await page.goto(key, timeout=self._navigation_timeout_ms, wait_until="networkidle")
        if response is None:
            raise BrowserError(f"Navigation to {key} produced no response")

        stages.enter("post_process")
        html = await self._post_processor.process(page, key)

        logger.info("Rendered %s status=%d bytes=%d", key, response.status, len(html))
        return RenderResult(html=html, status=response.status)

    # ── Teardown ─────────────────────────────────────────────────────

    async def close(self) -> None:
        """Shut the pool down, let outstanding renders settle, then release the rest.

        Pool shutdown drains running jobs and rejects queued ones, so every
        outstanding render task finishes (queued ones as 500 results).
        """
        if self._closed:
            return
        self._closed = True
        await self._pool.shutdown()
        pending = list(self._tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.info("Settled %d outstanding renders", len(pending))
        await self._post_processor.aclose()
        self._cache.close()
        logger.info("RenderCoordinator closed")
