# Copyright (C) 2025-2026 Retio AI
# SPDX-License-Identifier: AGPL-3.0-only

"""Stage marks for one render job.

The pool enters ``context`` while it opens a BrowserContext and ``render``
once the job callable takes over.  The coordinator's job narrows ``render``
into ``navigation`` and ``post_process`` on the same object, so when the job
timeout fires the last mark names the stage that stalled.

The object is created outside the job's ``asyncio.timeout`` block and is
still readable after cancellation.
"""

from __future__ import annotations

import time

STAGE_HINTS = {
    "context": "Browser is slow to open a new context; it may be overloaded or disconnected.",
    "render": "The render job never reported progress after the page opened.",
    "navigation": "Page never reached network idle; long-polling or a stuck third-party request.",
    "post_process": "Stylesheet fetches are slow or the document is very large.",
}


def _ms(ns: int) -> float:
    return round(ns / 1e6, 1)


class RenderStages:
    """Ordered ``(stage, entered_at)`` marks; each mark ends where the next begins."""

    __slots__ = ("_marks", "_closed_ns")

    def __init__(self) -> None:
        self._marks: list[tuple[str, int]] = []
        self._closed_ns: int | None = None

    def enter(self, name: str) -> None:
        self._marks.append((name, time.monotonic_ns()))
        self._closed_ns = None

    def close(self) -> None:
        """Stop the clock on the last stage.  Later calls keep the first stop time."""
        if self._closed_ns is None and self._marks:
            self._closed_ns = time.monotonic_ns()

    @property
    def current(self) -> str | None:
        if self._closed_ns is not None or not self._marks:
            return None
        return self._marks[-1][0]

    def _end_ns(self) -> int:
        return self._closed_ns if self._closed_ns is not None else time.monotonic_ns()

    @property
    def total_ms(self) -> float:
        if not self._marks:
            return 0.0
        return _ms(self._end_ns() - self._marks[0][1])

    def durations_ms(self) -> dict[str, float]:
        """``{stage: ms}`` in entry order; the open stage is measured up to now."""
        ends = [entered for _, entered in self._marks[1:]] + [self._end_ns()]
        return {name: _ms(end - entered) for (name, entered), end in zip(self._marks, ends)}

    def stall_report(self) -> dict:
        """Where a timed-out job was stuck, for the pool's warning log and 500 body."""
        durations = self.durations_ms()
        stalled = self.current or "unknown"
        return {
            "stage": stalled,
            "stage_ms": durations.get(stalled, 0.0),
            "stages": durations,
            "total_ms": self.total_ms,
            "hint": STAGE_HINTS.get(stalled, f"No progress recorded during '{stalled}'."),
        }
