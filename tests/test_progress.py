# Copyright (c) 2025 Dave Tofflemire, SigilDERG Project
# Licensed under the GNU Affero General Public License v3.0 (AGPLv3).
# Commercial licenses are available. Contact: davetmire85@gmail.com

import asyncio

import pytest

from code_context.progress import ProgressTracker, run_heartbeat


def test_tracker_never_moves_backwards():
    seen = []
    tracker = ProgressTracker(sink=lambda p, t: seen.append((p, t)))
    tracker.report(0.3)
    tracker.report(0.2)
    tracker.report(0.3)
    tracker.report(2.0)
    assert seen == [(0.3, 1.0), (1.0, 1.0)]
    assert tracker.last == (1.0, 1.0)


def test_scaled_observer_maps_into_range():
    tracker = ProgressTracker()
    stage = tracker.scaled(0.5, 0.75)
    stage(1, 4)
    assert tracker.last[0] == pytest.approx(0.5625)
    stage(4, 4)
    assert tracker.last[0] == pytest.approx(0.75)


def test_failing_sink_does_not_break_reporting():
    def sink(progress, total):
        raise RuntimeError("client went away")

    tracker = ProgressTracker(sink=sink)
    tracker.report(0.5)
    assert tracker.last == (0.5, 1.0)


def test_heartbeat_resends_last_value():
    tracker = ProgressTracker()
    tracker.report(0.25)
    sent = []
    stop = None

    async def send(progress, total):
        sent.append((progress, total))
        if len(sent) == 2:
            stop.set()

    async def run():
        nonlocal stop
        stop = asyncio.Event()
        await asyncio.wait_for(run_heartbeat(tracker, send, 0.01, stop), timeout=2)

    asyncio.run(run())
    assert sent == [(0.25, 1.0), (0.25, 1.0)]
