"""Tests for the delayed-callback scheduler."""

from __future__ import annotations

from conftest import FakeClock
from refstore.utils.tasks import TaskScheduler


def _scheduler() -> tuple[TaskScheduler, FakeClock]:
    clock = FakeClock()
    return TaskScheduler(clock, clock.sleep), clock


class TestTaskScheduler:
    def test_runs_only_due_callbacks(self) -> None:
        scheduler, clock = _scheduler()
        ran = []
        scheduler.call_later(1.0, lambda: ran.append("late"))
        scheduler.call_later(0.0, lambda: ran.append("now"))

        assert scheduler.run_due() == 1
        assert ran == ["now"]
        assert len(scheduler) == 1

        clock.advance(1.0)
        assert scheduler.run_due() == 1
        assert ran == ["now", "late"]

    def test_same_due_time_keeps_order(self) -> None:
        scheduler, _ = _scheduler()
        ran = []
        for index in range(5):
            scheduler.call_later(0.5, lambda index=index: ran.append(index))

        scheduler.drain()
        assert ran == [0, 1, 2, 3, 4]

    def test_drain_waits_and_runs_followups(self) -> None:
        """Callbacks queued by running callbacks are drained too."""
        scheduler, clock = _scheduler()
        ran = []

        def first() -> None:
            ran.append("first")
            scheduler.call_later(2.0, lambda: ran.append("second"))

        scheduler.call_later(1.0, first)

        assert scheduler.drain() == 2
        assert ran == ["first", "second"]
        assert clock.now == 3.0

    def test_failing_callback_does_not_stop_others(self) -> None:
        scheduler, _ = _scheduler()
        ran = []

        def broken() -> None:
            raise RuntimeError("boom")

        scheduler.call_later(0, broken)
        scheduler.call_later(0, lambda: ran.append("ok"))

        assert scheduler.run_due() == 2
        assert ran == ["ok"]
