# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

"""Progress reporting shared between the pipeline worker and a heartbeat task."""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Awaitable, Callable

logger = logging.getLogger(__name__)

ProgressFn = Callable[[float, float], None]


class ProgressTracker:
    """Holds the last reported (progress, total) pair; never moves backwards.

    ``report`` is called from the worker thread, ``last`` is read by the
    heartbeat task on the event loop.
    """

    def __init__(self, total: float = 1.0, sink: ProgressFn | None = None):
        self._lock = threading.Lock()
        self._progress = 0.0
        self._total = total
        self._sink = sink

    @property
    def last(self) -> tuple[float, float]:
        with self._lock:
            return self._progress, self._total

    def report(self, progress: float, total: float | None = None) -> None:
        with self._lock:
            if total is not None and total > 0 and total != self._total:
                # rescale into the tracker's own total
                progress = progress / total * self._total
            progress = min(max(progress, self._progress), self._total)
            advanced = progress > self._progress
            self._progress = progress
            current = (self._progress, self._total)
        if advanced and self._sink is not None:
            try:
                self._sink(*current)
            except Exception:
                logger.debug("Progress sink failed", exc_info=True)

    def scaled(self, start: float, end: float) -> ProgressFn:
        """Observer mapping a sub-stage's fraction onto [start, end] of this tracker."""

        def _report(progress: float, total: float = 1.0) -> None:
            fraction = progress / total if total else 1.0
            self.report(start + (end - start) * min(max(fraction, 0.0), 1.0))

        return _report


async def run_heartbeat(
    tracker: ProgressTracker,
    send: Callable[[float, float], Awaitable[None]],
    interval: float,
    stop: asyncio.Event,
) -> None:
    """Re-send the tracker's last value every ``interval`` seconds until ``stop`` is set."""
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass
        progress, total = tracker.last
        try:
            await send(progress, total)
        except Exception:
            logger.debug("Heartbeat progress notification failed", exc_info=True)
