# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Tests for RenderWorkerPool: shared browser, fixed workers, FIFO queue.

All tests mock Playwright/Browser/BrowserContext to avoid launching a real browser.
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from prerender import RenderResult
from prerender.browser_config import BrowserConfig
from prerender.errors import BrowserError, PoolClosedError
from prerender.worker_pool import PoolHealth, RenderWorkerPool

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


def _mock_context():
    context = AsyncMock()
    context.new_page = AsyncMock(return_value=MagicMock(name="page"))
    context.set_default_navigation_timeout = MagicMock()
    context.close = AsyncMock()
    return context


def _mock_playwright_and_browser():
    """Create mock playwright, browser for patching."""
    pw = AsyncMock()
    browser = AsyncMock()
    browser.is_connected = MagicMock(return_value=True)
    browser.close = AsyncMock()
    browser.contexts_created = []

    async def _new_context(**kwargs):
        context = _mock_context()
        browser.contexts_created.append(context)
        return context

    browser.new_context = AsyncMock(side_effect=_new_context)
    pw.chromium.launch = AsyncMock(return_value=browser)
    pw.stop = AsyncMock()
    return pw, browser


@pytest.fixture
def mock_pw():
    """Patch async_playwright to return mock objects."""
    pw, browser = _mock_playwright_and_browser()
    with patch("prerender.worker_pool.async_playwright") as mock_apw:
        mock_apw.return_value.start = AsyncMock(return_value=pw)
        yield pw, browser


def _ok_job(html: str = "<html>ok</html>", status: int = 200):
    async def run(page, key, stages):
        return RenderResult(html=html, status=status)

    return run


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


class TestLifecycle:
    async def test_enter_launches_browser(self, mock_pw):
        pw, browser = mock_pw
        async with RenderWorkerPool(max_concurrency=2) as pool:
            assert pool._browser is browser
            assert len(pool._workers) == 2
            kwargs = pw.chromium.launch.call_args.kwargs
            assert kwargs["headless"] is True
            assert "--no-sandbox" in kwargs["args"]
            assert "executable_path" not in kwargs

    async def test_executable_path_passed(self, mock_pw):
        pw, _ = mock_pw
        config = BrowserConfig(executable_path="/usr/bin/chromium")
        async with RenderWorkerPool(max_concurrency=1, config=config):
            assert pw.chromium.launch.call_args.kwargs["executable_path"] == "/usr/bin/chromium"

    async def test_exit_closes_browser_and_playwright(self, mock_pw):
        pw, browser = mock_pw
        async with RenderWorkerPool(max_concurrency=2) as pool:
            pass
        browser.close.assert_awaited_once()
        pw.stop.assert_awaited_once()
        assert pool._closed
        assert pool._workers == []

    async def test_launch_classmethod(self, mock_pw):
        pool = await RenderWorkerPool.launch(max_concurrency=3)
        try:
            assert pool.health().max_concurrency == 3
            assert not pool._closed
        finally:
            await pool.shutdown()

    async def test_shutdown_idempotent(self, mock_pw):
        pw, browser = mock_pw
        pool = await RenderWorkerPool.launch(max_concurrency=1)
        await pool.shutdown()
        await pool.shutdown()
        browser.close.assert_awaited_once()

    async def test_launch_failure_stops_playwright(self, mock_pw):
        pw, _ = mock_pw
        pw.chromium.launch = AsyncMock(side_effect=RuntimeError("launch failed"))
        with pytest.raises(RuntimeError, match="launch failed"):
            await RenderWorkerPool.launch(max_concurrency=1)
        pw.stop.assert_awaited_once()

    async def test_missing_chromium_auto_installed(self, mock_pw):
        pw, browser = mock_pw
        missing = RuntimeError("Executable doesn't exist at /ms-playwright")
        pw.chromium.launch = AsyncMock(side_effect=[missing, browser])
        with patch("prerender.worker_pool.auto_install_chromium", AsyncMock(return_value=True)) as install:
            pool = await RenderWorkerPool.launch(max_concurrency=1)
        try:
            install.assert_awaited_once()
            assert pool._browser is browser
        finally:
            await pool.shutdown()

    async def test_missing_chromium_install_failure(self, mock_pw):
        pw, _ = mock_pw
        pw.chromium.launch = AsyncMock(side_effect=RuntimeError("Executable doesn't exist at /ms-playwright"))
        with patch("prerender.worker_pool.auto_install_chromium", AsyncMock(return_value=False)):
            with pytest.raises(BrowserError, match="playwright install chromium"):
                await RenderWorkerPool.launch(max_concurrency=1)

    def test_invalid_concurrency(self):
        with pytest.raises(ValueError, match="max_concurrency"):
            RenderWorkerPool(max_concurrency=0)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestExecute:
    async def test_returns_job_result(self, mock_pw):
        seen = {}

        async def run(page, key, stages):
            seen["page"] = page
            seen["key"] = key
            seen["stage"] = stages.current
            return RenderResult(html="<html>hi</html>", status=404)

        async with RenderWorkerPool(max_concurrency=1) as pool:
            result = await pool.execute("https://example.com/a", run)

        assert result == RenderResult(html="<html>hi</html>", status=404)
        assert seen["key"] == "https://example.com/a"
        assert seen["page"] is not None
        assert seen["stage"] == "render"

    async def test_fresh_context_per_job_and_closed(self, mock_pw):
        _, browser = mock_pw
        async with RenderWorkerPool(max_concurrency=1) as pool:
            await pool.execute("https://example.com/a", _ok_job())
            await pool.execute("https://example.com/b", _ok_job())
            assert pool.active_count == 0

        assert len(browser.contexts_created) == 2
        for context in browser.contexts_created:
            context.close.assert_awaited_once()
            context.set_default_navigation_timeout.assert_called_once_with(25000)

    async def test_context_options(self, mock_pw):
        _, browser = mock_pw
        config = BrowserConfig(viewport_width=800, viewport_height=600, user_agent="UA/1.0")
        async with RenderWorkerPool(max_concurrency=1, config=config) as pool:
            await pool.execute("https://example.com/", _ok_job())
        kwargs = browser.new_context.call_args.kwargs
        assert kwargs["viewport"] == {"width": 800, "height": 600}
        assert kwargs["user_agent"] == "UA/1.0"
        assert kwargs["ignore_https_errors"] is True
        assert kwargs["service_workers"] == "block"

    async def test_concurrency_bound(self, mock_pw):
        running = 0
        peak = 0

        async def run(page, key, stages):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.02)
            running -= 1
            return RenderResult(html=key, status=200)

        async with RenderWorkerPool(max_concurrency=2) as pool:
            results = await asyncio.gather(*(pool.execute(f"https://example.com/{i}", run) for i in range(6)))

        assert peak == 2
        assert [r.html for r in results] == [f"https://example.com/{i}" for i in range(6)]

    async def test_fifo_order(self, mock_pw):
        started: list[str] = []

        async def run(page, key, stages):
            started.append(key)
            await asyncio.sleep(0)
            return RenderResult(html=key, status=200)

        async with RenderWorkerPool(max_concurrency=1) as pool:
            keys = [f"https://example.com/{i}" for i in range(5)]
            await asyncio.gather(*(pool.execute(k, run) for k in keys))

        assert started == keys


# ---------------------------------------------------------------------------
# Failure isolation
# ---------------------------------------------------------------------------


class TestFailures:
    async def test_job_exception_becomes_500(self, mock_pw):
        async def boom(page, key, stages):
            raise ValueError("boom")

        async with RenderWorkerPool(max_concurrency=1) as pool:
            failed = await pool.execute("https://example.com/bad", boom)
            ok = await pool.execute("https://example.com/good", _ok_job())

        assert failed == RenderResult(html="ValueError: boom", status=500)
        assert ok.status == 200

    async def test_failure_does_not_affect_concurrent_job(self, mock_pw):
        async def slow_ok(page, key, stages):
            await asyncio.sleep(0.02)
            return RenderResult(html="fine", status=200)

        async def boom(page, key, stages):
            raise RuntimeError("navigation failed")

        async with RenderWorkerPool(max_concurrency=2) as pool:
            ok, failed = await asyncio.gather(
                pool.execute("https://example.com/ok", slow_ok),
                pool.execute("https://example.com/bad", boom),
            )

        assert ok.status == 200
        assert failed.status == 500
        assert failed.html == "RuntimeError: navigation failed"

    async def test_job_timeout(self, mock_pw):
        async def hang(page, key, stages):
            await asyncio.sleep(5)
            return RenderResult(html="never", status=200)

        config = BrowserConfig(navigation_timeout_ms=20, job_timeout_ms=50)
        async with RenderWorkerPool(max_concurrency=1, config=config) as pool:
            result = await pool.execute("https://example.com/slow", hang)

        assert result.status == 500
        assert result.html.startswith("TimeoutError: render exceeded 50ms")
        assert "'render'" in result.html

    async def test_job_timeout_names_stage_marked_by_job(self, mock_pw):
        async def stalls_in_navigation(page, key, stages):
            stages.enter("navigation")
            await asyncio.sleep(5)
            return RenderResult(html="never", status=200)

        config = BrowserConfig(navigation_timeout_ms=20, job_timeout_ms=50)
        async with RenderWorkerPool(max_concurrency=1, config=config) as pool:
            result = await pool.execute("https://example.com/slow", stalls_in_navigation)

        assert result.status == 500
        assert "during 'navigation'" in result.html

    async def test_default_job_timeout_outlasts_navigation_timeout(self, mock_pw):
        async def slow_but_within_navigation(page, key, stages):
            stages.enter("navigation")
            await asyncio.sleep(0.1)
            stages.enter("post_process")
            return RenderResult(html="<html>late</html>", status=200)

        config = BrowserConfig(navigation_timeout_ms=200)
        async with RenderWorkerPool(max_concurrency=1, config=config) as pool:
            assert pool.job_timeout_ms > config.navigation_timeout_ms
            result = await pool.execute("https://example.com/slow", slow_but_within_navigation)

        assert result == RenderResult(html="<html>late</html>", status=200)

    async def test_context_creation_failure(self, mock_pw):
        _, browser = mock_pw
        browser.new_context = AsyncMock(side_effect=RuntimeError("Target closed"))
        async with RenderWorkerPool(max_concurrency=1) as pool:
            result = await pool.execute("https://example.com/", _ok_job())
        assert result == RenderResult(html="RuntimeError: Target closed", status=500)

    async def test_context_closed_after_failure(self, mock_pw):
        _, browser = mock_pw

        async def boom(page, key, stages):
            raise RuntimeError("crash")

        async with RenderWorkerPool(max_concurrency=1) as pool:
            await pool.execute("https://example.com/", boom)
        browser.contexts_created[0].close.assert_awaited_once()

    async def test_counters(self, mock_pw):
        async def boom(page, key, stages):
            raise RuntimeError("crash")

        async with RenderWorkerPool(max_concurrency=1) as pool:
            await pool.execute("https://example.com/a", _ok_job())
            await pool.execute("https://example.com/b", boom)
            health = pool.health()
        assert health.completed == 1
        assert health.failed == 1


# ---------------------------------------------------------------------------
# Shutdown
# ---------------------------------------------------------------------------


class TestShutdown:
    async def test_execute_before_start_raises(self):
        pool = RenderWorkerPool(max_concurrency=1)
        with pytest.raises(PoolClosedError):
            await pool.execute("https://example.com/", _ok_job())

    async def test_execute_after_shutdown_raises(self, mock_pw):
        pool = await RenderWorkerPool.launch(max_concurrency=1)
        await pool.shutdown()
        with pytest.raises(PoolClosedError):
            await pool.execute("https://example.com/", _ok_job())

    async def test_queued_jobs_rejected_inflight_drained(self, mock_pw):
        started = asyncio.Event()
        release = asyncio.Event()

        async def blocking(page, key, stages):
            started.set()
            await release.wait()
            return RenderResult(html="done", status=200)

        pool = await RenderWorkerPool.launch(max_concurrency=1)
        inflight = asyncio.create_task(pool.execute("https://example.com/first", blocking))
        queued = asyncio.create_task(pool.execute("https://example.com/second", _ok_job()))
        await started.wait()

        shutdown = asyncio.create_task(pool.shutdown())
        await asyncio.sleep(0)
        assert not shutdown.done()

        release.set()
        await shutdown

        assert (await inflight).html == "done"
        with pytest.raises(PoolClosedError):
            await queued


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------


class TestHealth:
    async def test_snapshot(self, mock_pw):
        async with RenderWorkerPool(max_concurrency=3) as pool:
            health = pool.health()
        assert isinstance(health, PoolHealth)
        assert health.max_concurrency == 3
        assert health.active == 0
        assert health.queued == 0
        assert health.browser_connected is True

    def test_not_started(self):
        health = RenderWorkerPool(max_concurrency=2).health()
        assert health.browser_connected is False
        assert health.queued == 0

    def test_as_dict(self):
        health = PoolHealth(
            active=1, max_concurrency=4, queued=2, completed=3, failed=0, browser_connected=True
        )
        assert health.as_dict() == {
            "active": 1,
            "max_concurrency": 4,
            "queued": 2,
            "completed": 3,
            "failed": 0,
            "browser_connected": True,
        }
