"""
ingest/tests/test_circuit_breaker.py

Per-IP circuit breaker: trip, ban expiry, unban and sweeping.
"""

import pytest

from ingest.conftest import FakeClock
from ingest.core.circuit_breaker import CircuitBreaker
from ingest.core.metrics import circuit_breaker_trips_total

IP = "a1b2c3d4e5f60718293a4b5c6d7e8f90"


def make_breaker(clock, qps=1.0, ban=30, window=2):
    return CircuitBreaker(qps, ban, window, time_fn=clock)


class TestTripping:
    def test_opens_once_window_rate_is_exceeded(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        # 2 requests over a 2s window is exactly 1 qps
        assert breaker.record_request(IP).allowed
        assert breaker.record_request(IP).allowed
        decision = breaker.record_request(IP)
        assert not decision.allowed
        assert decision.tripped
        assert decision.retry_after_s == 30
        assert breaker.is_open(IP)
        assert circuit_breaker_trips_total.value() == 1

    def test_requests_spread_over_time_never_trip(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(10):
            assert breaker.record_request(IP).allowed
            clock.advance(1500)
        assert not breaker.is_open(IP)

    def test_banned_requests_report_remaining_ban(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(3):
            breaker.record_request(IP)
        clock.advance(10_000)
        decision = breaker.record_request(IP)
        assert not decision.allowed
        assert not decision.tripped
        assert decision.retry_after_s == 20
        assert breaker.retry_after_s(IP) == 20

    def test_ban_expires_and_resets_history(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(3):
            breaker.record_request(IP)
        clock.advance(30_000)
        assert not breaker.is_open(IP)
        assert breaker.record_request(IP).allowed

    def test_ips_are_independent(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(3):
            breaker.record_request(IP)
        assert breaker.record_request("other-ip-hash").allowed

    def test_thresholds_must_be_positive(self):
        with pytest.raises(ValueError):
            CircuitBreaker(0, 30, 2)


class TestAdmin:
    def test_banned_ips_only_expose_short_hashes(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(3):
            breaker.record_request(IP)
        (entry,) = breaker.banned_ips()
        assert entry["ipHash"] == IP[:8]
        assert entry["bannedUntil"] == clock() + 30_000
        assert entry["failureCount"] == 1

    def test_unban_accepts_the_short_prefix(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(3):
            breaker.record_request(IP)
        assert breaker.unban(IP[:8]) == 1
        assert not breaker.is_open(IP)
        assert breaker.record_request(IP).allowed
        assert breaker.unban(IP) == 0

    def test_unban_rejects_too_short_prefix(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        for _ in range(3):
            breaker.record_request(IP)
        assert breaker.unban(IP[:4]) == 0
        assert breaker.is_open(IP)

    def test_configure_changes_thresholds(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        breaker.configure(ip_qps_max=10, ban_seconds=5)
        for _ in range(5):
            assert breaker.record_request(IP).allowed
        assert breaker.stats()["ban_seconds"] == 5

    def test_failures_and_successes_adjust_failure_count(self):
        clock = FakeClock()
        breaker = make_breaker(clock)
        breaker.record_request(IP)
        breaker.record_failure(IP)
        breaker.record_failure(IP)
        breaker.record_success(IP)
        for _ in range(2):
            breaker.record_request(IP)
        (entry,) = breaker.banned_ips()
        assert entry["failureCount"] == 2


def test_sweep_drops_circuits_idle_for_a_day():
    clock = FakeClock()
    breaker = make_breaker(clock)
    breaker.record_request(IP)
    clock.advance(24 * 60 * 60 * 1000)
    assert breaker.sweep() == 0
    clock.advance(1)
    assert breaker.sweep() == 1
    assert breaker.stats()["circuits"] == 0


def test_stats_count_open_circuits():
    clock = FakeClock()
    breaker = make_breaker(clock)
    for _ in range(3):
        breaker.record_request(IP)
    breaker.record_request("quiet-ip-hash")
    stats = breaker.stats()
    assert (stats["circuits"], stats["open"]) == (2, 1)
    breaker.clear()
    assert breaker.stats()["circuits"] == 0
