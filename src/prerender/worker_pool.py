# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""RenderWorkerPool: one shared Chromium, ``max_concurrency`` fixed workers, FIFO job queue.

Every job gets a fresh isolated BrowserContext (not a new browser process)
which is closed as soon as the job finishes.  The pool knows nothing about
caching: it runs ``run(page, key, stages)`` and hands back a RenderResult.
The job may mark finer stages on ``stages``; the pool reports the last one
when the job timeout fires.

Failure model: anything a job raises (navigation error, Playwright timeout,
job timeout) is caught at the pool boundary and becomes a 500 RenderResult.
It never kills a worker or touches other in-flight jobs.

Lifecycle follows the ``AsyncContextManager`` pattern::

    async with RenderWorkerPool(max_concurrency=4) as pool:
        result = await pool.execute("https://example.com/", render_job)

Dependencies: browser_config.py, errors.py, render_stages.py only.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from contextlib import suppress
from dataclasses import dataclass, field
from types import TracebackType

from playwright.async_api import Browser, BrowserContext, Page, Playwright, async_playwright

from . import RenderResult
from .browser_config import BrowserConfig, auto_install_chromium, chromium_launch_args
from .errors import BrowserError, PoolClosedError
from .render_stages import RenderStages

logger = logging.getLogger(__name__)

RenderJob = Callable[[Page, str, RenderStages], Awaitable[RenderResult]]

_DEFAULT_MAX_CONCURRENCY = 4


# ---------------------------------------------------------------------------
# Health snapshot
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PoolHealth:
    """Immutable snapshot of pool state for monitoring."""

    active: int
    max_concurrency: int
    queued: int
    completed: int
    failed: int
    browser_connected: bool

    def as_dict(self) -> dict:
        return {
            "active": self.active,
            "max_concurrency": self.max_concurrency,
            "queued": self.queued,
            "completed": self.completed,
            "failed": self.failed,
            "browser_connected": self.browser_connected,
        }


# ---------------------------------------------------------------------------
# Internal: queued job
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class _QueuedJob:
    key: str
    run: RenderJob
    future: asyncio.Future
    enqueued_at: float = field(default_factory=time.monotonic)


# ---------------------------------------------------------------------------
# RenderWorkerPool
# ---------------------------------------------------------------------------


class RenderWorkerPool:
    """Bounded-concurrency render executor over a shared browser.

    Use as an async context manager, or ``await RenderWorkerPool.launch(...)``
    followed by ``await pool.shutdown()``.
    """

    def __init__(
        self,
        *,
        max_concurrency: int = _DEFAULT_MAX_CONCURRENCY,
        config: BrowserConfig | None = None,
    ) -> None:
        if max_concurrency <= 0:
            raise ValueError(f"max_concurrency must be > 0, got {max_concurrency}")
        self._max_concurrency = max_concurrency
        self._config = config or BrowserConfig()

        self._playwright: Playwright | None = None
        self._browser: Browser | None = None
        self._queue: asyncio.Queue[_QueuedJob] | None = None
        self._workers: list[asyncio.Task] = []
        self._contexts: set[BrowserContext] = set()
        self._closed = False
        self._completed = 0
        self._failed = 0

    @classmethod
    async def launch(
        cls,
        *,
        max_concurrency: int = _DEFAULT_MAX_CONCURRENCY,
        config: BrowserConfig | None = None,
    ) -> RenderWorkerPool:
        """Create a pool and start its browser and workers."""
        pool = cls(max_concurrency=max_concurrency, config=config)
        await pool.start()
        return pool

    # ── AsyncContextManager ──────────────────────────────────────────

    async def __aenter__(self) -> RenderWorkerPool:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.shutdown()

    async def start(self) -> None:
        """Launch Chromium and spawn the worker tasks."""
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._launch_browser()
        except Exception:
            await self._playwright.stop()
            self._playwright = None
            raise

        self._closed = False
        self._queue = asyncio.Queue()
        for index in range(self._max_concurrency):
            self._spawn_worker(index)
        logger.info(
            "RenderWorkerPool started (max_concurrency=%d, navigation_timeout=%dms, job_timeout=%dms)",
            self._max_concurrency,
            self._config.navigation_timeout_ms,
            self.job_timeout_ms,
        )

    async def _launch_browser(self) -> Browser:
        """Launch Chromium, auto-installing on first 'executable not found' error."""
        kwargs: dict = {
            "headless": self._config.headless,
            "args": chromium_launch_args(self._config),
        }
        if self._config.executable_path:
            kwargs["executable_path"] = self._config.executable_path
        try:
            return await self._playwright.chromium.launch(**kwargs)
        except Exception as exc:
            if "executable doesn't exist" not in str(exc).lower() or self._config.executable_path:
                raise
            if not await auto_install_chromium():
                raise BrowserError(
                    "Chromium is not installed and auto-install failed. Please run: playwright install chromium"
                ) from exc
            return await self._playwright.chromium.launch(**kwargs)

    # ── Job submission ───────────────────────────────────────────────

    async def execute(self, key: str, run: RenderJob) -> RenderResult:
        """Queue *run* for *key* and wait for its result.

        Raises:
            PoolClosedError: pool not started, shutting down, or the job was
                still queued when shutdown began.
        """
        if self._closed or self._queue is None:
            raise PoolClosedError(f"Render pool is closed; rejected job for {key}")
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait(_QueuedJob(key=key, run=run, future=future))
        return await future

    # ── Workers ──────────────────────────────────────────────────────

    def _spawn_worker(self, index: int) -> None:
        task = asyncio.get_running_loop().create_task(self._worker_loop(index), name=f"prerender-worker-{index}")
        task.add_done_callback(lambda t, i=index: self._handle_worker_crash(t, i))
        self._workers.append(task)

    def _handle_worker_crash(self, task: asyncio.Task, index: int) -> None:
        """Restart a worker if it crashed unexpectedly (not cancelled)."""
        with suppress(ValueError):
            self._workers.remove(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None and not self._closed:
            logger.error("Render worker %d crashed, restarting: %s", index, exc, exc_info=exc)
            self._spawn_worker(index)

    async def _worker_loop(self, index: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                if job.future.done():
                    # caller went away before the job started
                    continue
                wait_ms = (time.monotonic() - job.enqueued_at) * 1000
                logger.debug("Worker %d picked %s (queued %.0fms)", index, job.key, wait_ms)
                result = await self._run_job(job)
                if not job.future.done():
                    job.future.set_result(result)
            finally:
                self._queue.task_done()

    async def _run_job(self, job: _QueuedJob) -> RenderResult:
        """Run one job in a fresh context.  Never raises (except cancellation)."""
        stages = RenderStages()
        context: BrowserContext | None = None
        try:
            async with asyncio.timeout(self.job_timeout_ms / 1000):
                stages.enter("context")
                context = await self._new_context()
                page = await context.new_page()
                stages.enter("render")
                result = await job.run(page, job.key, stages)
            stages.close()
            self._completed += 1
            logger.debug(
                "Job done: %s status=%d total=%.1fms stages=%s",
                job.key,
                result.status,
                stages.total_ms,
                stages.durations_ms(),
            )
            return result
        except TimeoutError:
            self._failed += 1
            report = stages.stall_report()
            logger.warning(
                "URL: %s Failed with message: job timeout in '%s' after %.1fms (%s) stages=%s",
                job.key,
                report["stage"],
                report["total_ms"],
                report["hint"],
                report["stages"],
            )
            return RenderResult(
                html=f"TimeoutError: render exceeded {self.job_timeout_ms}ms during '{report['stage']}'",
                status=500,
            )
        except Exception as exc:
            self._failed += 1
            message = f"{type(exc).__name__}: {exc}"
            logger.warning("URL: %s Failed with message: %s", job.key, message)
            return RenderResult(html=message, status=500)
        finally:
            if context is not None:
                self._contexts.discard(context)
                with suppress(Exception):
                    await context.close()

    async def _new_context(self) -> BrowserContext:
        if self._browser is None:
            raise BrowserError("Browser is not running")
        context = await self._browser.new_context(
            viewport={
                "width": self._config.viewport_width,
                "height": self._config.viewport_height,
            },
            user_agent=self._config.user_agent,
            ignore_https_errors=self._config.ignore_https_errors,
            # Service workers would bypass request interception
            service_workers="block",
            accept_downloads=False,
        )
        self._contexts.add(context)
        context.set_default_navigation_timeout(self._config.navigation_timeout_ms)
        return context

    # ── Monitoring ───────────────────────────────────────────────────

    def health(self) -> PoolHealth:
        """Return a snapshot of pool health."""
        return PoolHealth(
            active=self.active_count,
            max_concurrency=self._max_concurrency,
            queued=self._queue.qsize() if self._queue is not None else 0,
            completed=self._completed,
            failed=self._failed,
            browser_connected=self._browser is not None and self._browser.is_connected(),
        )

    @property
    def active_count(self) -> int:
        return len(self._contexts)

    @property
    def job_timeout_ms(self) -> int:
        return self._config.effective_job_timeout_ms

    # ── Shutdown ─────────────────────────────────────────────────────

    async def shutdown(self) -> None:
        """Reject queued jobs, drain in-flight ones, then close browser and playwright."""
        if self._closed:
            return
        self._closed = True

        rejected = 0
        if self._queue is not None:
            while not self._queue.empty():
                job = self._queue.get_nowait()
                if not job.future.done():
                    job.future.set_exception(PoolClosedError(f"Render pool shut down before {job.key} started"))
                    rejected += 1
                self._queue.task_done()
            # In-flight jobs finish normally
            await self._queue.join()

        for task in list(self._workers):
            task.cancel()
        for task in list(self._workers):
            with suppress(asyncio.CancelledError):
                await task
        self._workers.clear()

        for context in list(self._contexts):
            with suppress(Exception):
                await context.close()
        self._contexts.clear()

        if self._browser:
            with suppress(Exception):
                await self._browser.close()
            self._browser = None
        if self._playwright:
            with suppress(Exception):
                await self._playwright.stop()
            self._playwright = None

        logger.info("RenderWorkerPool shut down (rejected=%d)", rejected)
