import time

import pytest

from ingest.core.sweeper import PeriodicSweeper


class CountingTarget:
    def __init__(self, removed=1):
        self.removed = removed
        self.calls = 0

    def sweep(self):
        self.calls += 1
        return self.removed


class BrokenTarget:
    def sweep(self):
        raise RuntimeError("lock poisoned")


def test_sweep_once_visits_every_target():
    a, b = CountingTarget(2), CountingTarget(0)
    sweeper = PeriodicSweeper(60, {"a": a, "b": b})
    assert sweeper.sweep_once() == {"a": 2, "b": 0}
    assert sweeper.sweep_once(["a"]) == {"a": 2}
    assert (a.calls, b.calls) == (2, 1)


def test_failing_target_does_not_stop_the_others():
    good = CountingTarget()
    sweeper = PeriodicSweeper(60, {"broken": BrokenTarget(), "good": good})
    assert sweeper.sweep_once() == {"broken": 0, "good": 1}


def test_background_thread_runs_and_stops():
    target = CountingTarget()
    sweeper = PeriodicSweeper(0.01, {"t": target})
    sweeper.start()
    assert sweeper.running
    deadline = time.time() + 2
    while target.calls < 2 and time.time() < deadline:
        time.sleep(0.01)
    sweeper.shutdown()
    assert not sweeper.running
    assert target.calls >= 2


def test_interval_must_be_positive():
    with pytest.raises(ValueError):
        PeriodicSweeper(0, {})


def test_container_sweeps_abuse_stores(container, clock):
    container.dedupe.should_suppress("ip", "rule-1")
    container.burst.admit("COPY", "rule-1", "ip")
    clock.advance(container.settings.VIEW_DEDUPE_WINDOW_MS)
    removed = container.sweeper.sweep_once()
    assert removed["view_dedupe"] == 1
    assert removed["burst"] == 1
    assert set(removed) == {"rate_limit", "circuit_breaker", "view_dedupe", "burst", "anomaly"}
