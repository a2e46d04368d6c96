import threading
from datetime import datetime, timedelta, timezone

import pytest

from dealer_matching.errors import ValidationError
from dealer_matching.memory import InMemoryDatabase
from dealer_matching.quota import QuotaGuard, RateLimiter, day_window, format_time_until

from conftest import FixedClock


class UnavailableDatabase(InMemoryDatabase):
    def consume_window_quota(self, subject, window_start, limit):
        raise ConnectionError("counter store down")

    def get_window_count(self, subject, window_start):
        raise ConnectionError("counter store down")


def test_trial_plan_allows_three_views_a_day(db, clock):
    guard = QuotaGuard(db=db, clock=clock)

    decisions = [guard.check_and_consume("dealer-1", "trial") for _ in range(4)]

    assert [d.allowed for d in decisions] == [True, True, True, False]
    assert [d.remaining for d in decisions] == [2, 1, 0, 0]
    assert decisions[-1].reset_at == datetime(2026, 3, 11, tzinfo=timezone.utc)
    assert "plan limit of 3 cars" in decisions[-1].message


def test_denied_attempt_does_not_grow_counter(db, clock):
    guard = QuotaGuard(db=db, clock=clock)
    for _ in range(6):
        guard.check_and_consume("dealer-1", "trial")

    assert guard.usage_stats("dealer-1", "trial").viewed_today == 3


def test_dealers_have_separate_counters(db, clock):
    guard = QuotaGuard(db=db, clock=clock)
    for _ in range(3):
        guard.check_and_consume("dealer-1", "trial")

    assert guard.check_and_consume("dealer-2", "trial").allowed


def test_counter_resets_at_midnight_utc(db, clock):
    guard = QuotaGuard(db=db, clock=clock)
    for _ in range(3):
        guard.check_and_consume("dealer-1", "trial")
    assert not guard.check_and_consume("dealer-1", "trial").allowed

    clock.now = datetime(2026, 3, 11, 0, 0, 1, tzinfo=timezone.utc)
    decision = guard.check_and_consume("dealer-1", "trial")
    assert decision.allowed
    assert decision.remaining == 2


def test_concurrent_views_never_exceed_limit(db, clock):
    guard = QuotaGuard(db=db, clock=clock)
    results = []
    results_lock = threading.Lock()
    start = threading.Barrier(20)

    def view():
        start.wait()
        decision = guard.check_and_consume("dealer-1", "premium")
        with results_lock:
            results.append(decision.allowed)

    threads = [threading.Thread(target=view) for _ in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert results.count(True) == 10
    assert guard.usage_stats("dealer-1", "premium").remaining == 0


def test_store_outage_fails_open(clock):
    guard = QuotaGuard(db=UnavailableDatabase(), clock=clock)

    decision = guard.check_and_consume("dealer-1", "trial")
    assert decision.allowed
    assert guard.usage_stats("dealer-1", "trial").can_view


def test_unknown_plan_is_rejected(db, clock):
    with pytest.raises(ValidationError):
        QuotaGuard(db=db, clock=clock).check_and_consume("dealer-1", "platinum")


def test_usage_stats_readout(db, clock):
    guard = QuotaGuard(db=db, clock=clock)
    guard.check_and_consume("dealer-1", "starter")
    guard.check_and_consume("dealer-1", "starter")

    stats = guard.usage_stats("dealer-1", "STARTER")
    assert stats.viewed_today == 2
    assert stats.limit == 5
    assert stats.remaining == 3
    assert stats.percentage == 40.0


def test_reset_today_clears_counter(db, clock):
    guard = QuotaGuard(db=db, clock=clock)
    for _ in range(3):
        guard.check_and_consume("dealer-1", "trial")

    guard.reset_today("dealer-1")
    assert guard.check_and_consume("dealer-1", "trial").allowed


def test_time_until_reset(clock):
    assert QuotaGuard(db=InMemoryDatabase(), clock=clock).time_until_reset() == "9h 30m"
    now = datetime(2026, 3, 10, 23, 18, tzinfo=timezone.utc)
    assert format_time_until(day_window(now)[1], now) == "42m"


def test_rate_limiter_blocks_within_window(db, clock):
    limiter = RateLimiter(db=db, limit=3, window=timedelta(hours=1), clock=clock)

    assert [limiter.hit("Prospect@Example.com").allowed for _ in range(4)] == [True, True, True, False]
    assert limiter.hit("other@example.com").allowed

    clock.now = clock.now + timedelta(hours=1)
    assert limiter.hit("prospect@example.com").allowed


def test_rate_limiter_does_not_touch_view_quota(db, clock):
    limiter = RateLimiter(db=db, limit=1, window=timedelta(hours=1), clock=clock)
    limiter.hit("dealer-1")

    assert QuotaGuard(db=db, clock=clock).usage_stats("dealer-1", "trial").viewed_today == 0
