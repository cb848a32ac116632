from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

from caseguard.core.config import Settings
from caseguard.domain.models import Role
from caseguard.domain.outcomes import Allowed, RateLimited
from caseguard.services.abuse import AbuseGuard, RateWindowStore, WindowPolicy
from caseguard.tests.utils.clock import FakeClock


def _guard(clock: FakeClock, **overrides) -> AbuseGuard:
    return AbuseGuard(settings=Settings(**overrides), clock=clock)


def test_view_limit_allows_exactly_max_then_trips() -> None:
    clock = FakeClock()
    guard = _guard(clock)
    decisions = [guard.consume_record_view("fw-1", Role.FIELD_WORKER.value) for _ in range(20)]
    assert all(isinstance(decision, Allowed) for decision in decisions)
    assert decisions[-1].remaining == 0

    tripped = guard.consume_record_view("fw-1", Role.FIELD_WORKER.value)
    assert tripped == RateLimited(retry_after_s=3600)

    clock.advance(minutes=30)
    assert guard.consume_record_view("fw-1", Role.FIELD_WORKER.value) == RateLimited(retry_after_s=1800)


def test_window_resets_once_elapsed() -> None:
    clock = FakeClock()
    guard = _guard(clock)
    for _ in range(21):
        guard.consume_record_view("fw-1", Role.FIELD_WORKER.value)
    clock.advance(seconds=3601)
    assert guard.consume_record_view("fw-1", Role.FIELD_WORKER.value) == Allowed(count=1, remaining=19)


def test_subjects_have_independent_budgets() -> None:
    guard = _guard(FakeClock(), rl_view_max_events=1)
    assert isinstance(guard.consume_record_view("fw-1", Role.FIELD_WORKER.value), Allowed)
    assert isinstance(guard.consume_record_view("fw-1", Role.FIELD_WORKER.value), RateLimited)
    assert isinstance(guard.consume_record_view("fw-2", Role.FIELD_WORKER.value), Allowed)


def test_admins_are_exempt_from_view_limit() -> None:
    guard = _guard(FakeClock(), rl_view_max_events=2)
    decisions = [guard.consume_record_view("admin-1", Role.ADMIN.value) for _ in range(50)]
    assert all(isinstance(decision, Allowed) for decision in decisions)
    assert guard.tracked_windows == 0


def test_api_limit_uses_short_window() -> None:
    clock = FakeClock()
    guard = _guard(clock)
    for _ in range(100):
        assert isinstance(guard.consume_api_call("id-1"), Allowed)
    assert guard.consume_api_call("id-1") == RateLimited(retry_after_s=60)
    clock.advance(seconds=61)
    assert isinstance(guard.consume_api_call("id-1"), Allowed)


def test_login_throttle_keys_on_normalized_email() -> None:
    clock = FakeClock()
    guard = _guard(clock)
    for variant in ["a@x.org", "A@X.ORG", " a@x.org", "a@X.org"]:
        guard.record_login_failure(variant)
    assert guard.login_throttled("a@x.org") is None
    assert guard.login_failures_remaining("a@x.org") == 1

    guard.record_login_failure("a@x.org")
    assert guard.login_throttled("A@x.org") == RateLimited(retry_after_s=900)

    guard.clear_login_failures("a@x.org")
    assert guard.login_throttled("a@x.org") is None


def test_sweep_discards_expired_windows_only() -> None:
    clock = FakeClock()
    guard = _guard(clock)
    guard.consume_api_call("id-1")
    guard.consume_record_view("fw-1", Role.FIELD_WORKER.value)
    clock.advance(seconds=120)
    assert guard.sweep() == 1
    assert guard.tracked_windows == 1


def test_store_counts_concurrent_hits_without_loss() -> None:
    store = RateWindowStore(shards=4)
    policy = WindowPolicy(max_events=10_000, window=timedelta(hours=1))
    now = datetime(2026, 3, 2, tzinfo=timezone.utc)

    def hammer(_: int) -> None:
        for _ in range(250):
            store.hit("api", "shared", policy, now)

    with ThreadPoolExecutor(max_workers=8) as pool:
        list(pool.map(hammer, range(8)))

    window = store.peek("api", "shared", policy, now)
    assert window is not None
    assert window.count == 2000
