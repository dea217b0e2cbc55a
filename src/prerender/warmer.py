# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Cache warming: push a batch of URLs through ``RenderCoordinator.resolve``.

Each URL gets the cache-bust token appended as a query parameter, which
forces a fresh render and refreshes the cache entry of its query-free key.
All requests are submitted at once; the render pool's concurrency bound is
the only throttle.  One failed URL never stops the others.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from . import RenderRequest, has_query

if TYPE_CHECKING:
    from .coordinator import RenderCoordinator

logger = logging.getLogger(__name__)


def append_cache_bust(url: str, token: str) -> str:
    """``https://a.com/p`` + ``v=1`` -> ``https://a.com/p?v=1`` (``&`` if a query exists)."""
    base, sep_hash, fragment = url.partition("#")
    joiner = "&" if has_query(base) else "?"
    return f"{base}{joiner}{token}{sep_hash}{fragment}"


@dataclass
class WarmReport:
    """Outcome of one warm run."""

    requested: int = 0
    refreshed: int = 0
    failed_urls: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failed_urls)


class SitemapWarmer:
    """Feeds URL batches through the coordinator with a cache-bust token."""

    def __init__(self, coordinator: RenderCoordinator) -> None:
        self._coordinator = coordinator
        self._tasks: set[asyncio.Task] = set()

    async def warm(self, urls: Iterable[str], cache_bust_token: str) -> WarmReport:
        """Refresh every URL in *urls* and wait for all of them."""
        targets = [u.strip() for u in urls if u and u.strip()]
        report = WarmReport(requested=len(targets))
        if not targets:
            return report

        outcomes = await asyncio.gather(*(self._warm_one(u, cache_bust_token) for u in targets))
        for url, ok in zip(targets, outcomes, strict=True):
            if ok:
                report.refreshed += 1
            else:
                report.failed_urls.append(url)
        logger.info(
            "Cache warm finished: requested=%d refreshed=%d failed=%d",
            report.requested,
            report.refreshed,
            report.failed,
        )
        return report

    async def _warm_one(self, url: str, token: str) -> bool:
        request = RenderRequest(url=append_cache_bust(url, token), cache_bust=token)
        try:
            result = await self._coordinator.resolve(request)
        except Exception:
            logger.exception("Cache warm FAILED with url %s", url)
            return False
        if not result.ok:
            logger.warning("Cache warm FAILED with url %s (status=%d)", url, result.status)
            return False
        logger.info("Cache updated with url %s", url)
        return True

    def schedule(self, urls: Iterable[str], cache_bust_token: str) -> asyncio.Task:
        """Start :meth:`warm` in the background and return its task handle."""
        task = asyncio.get_running_loop().create_task(
            self.warm(list(urls), cache_bust_token),
            name="prerender-warm",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def aclose(self) -> None:
        """Cancel scheduled warm runs.  Renders already submitted finish in the coordinator."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d warm runs", len(tasks))
