"""Tests for the identity-keyed brute-force lockout tracker."""

import asyncio
from datetime import timedelta

import pytest

from hackguard.service.errors import LockedOutError
from hackguard.service.lockout import LoginAttemptTracker


@pytest.fixture
def tracker(cache, clock):
    return LoginAttemptTracker(cache, max_attempts=5, lock_minutes=15, clock=clock)


async def _fail(tracker, email, times):
    for _ in range(times):
        await tracker.record_failed_login(email)


class TestCheckLoginAttempts:
    async def test_unknown_email_allowed_with_full_budget(self, tracker):
        status = await tracker.check_login_attempts("new@example.com")
        assert status.allowed
        assert status.remaining_attempts == 5
        assert status.lock_until is None

    async def test_remaining_attempts_count_down(self, tracker):
        await _fail(tracker, "user@example.com", 3)
        status = await tracker.check_login_attempts("user@example.com")
        assert status.allowed
        assert status.remaining_attempts == 2

    async def test_locks_after_max_failures(self, tracker, clock):
        await _fail(tracker, "user@example.com", 5)
        status = await tracker.check_login_attempts("user@example.com")
        assert not status.allowed
        assert status.lock_until == clock.now + timedelta(minutes=15)
        assert status.remaining_attempts == 0

    async def test_lock_not_extended_by_attempts_by_default(self, tracker, clock):
        await _fail(tracker, "user@example.com", 5)
        first = await tracker.check_login_attempts("user@example.com")
        clock.advance(minutes=10)
        second = await tracker.check_login_attempts("user@example.com")
        assert not second.allowed
        assert second.lock_until == first.lock_until

    async def test_lock_extended_when_configured(self, cache, clock):
        tracker = LoginAttemptTracker(
            cache, max_attempts=5, lock_minutes=15, extend_on_attempt=True, clock=clock
        )
        await _fail(tracker, "user@example.com", 5)
        await tracker.check_login_attempts("user@example.com")
        clock.advance(minutes=10)
        status = await tracker.check_login_attempts("user@example.com")
        assert status.lock_until == clock.now + timedelta(minutes=15)

    async def test_elapsed_lock_starts_fresh_cycle(self, tracker, clock):
        await _fail(tracker, "user@example.com", 5)
        await tracker.check_login_attempts("user@example.com")
        clock.advance(minutes=15, seconds=1)
        status = await tracker.check_login_attempts("user@example.com")
        assert status.allowed
        assert status.remaining_attempts == 5

    async def test_email_is_normalized(self, tracker):
        await _fail(tracker, "  User@Example.COM ", 5)
        status = await tracker.check_login_attempts("user@example.com")
        assert not status.allowed

    async def test_clear_resets_count_and_lock(self, tracker):
        await _fail(tracker, "user@example.com", 5)
        await tracker.check_login_attempts("user@example.com")
        await tracker.clear_login_attempts("user@example.com")
        status = await tracker.check_login_attempts("user@example.com")
        assert status.allowed
        assert status.remaining_attempts == 5

    async def test_success_before_lock_resets_near_locked_user(self, tracker):
        await _fail(tracker, "user@example.com", 4)
        await tracker.clear_login_attempts("user@example.com")
        await _fail(tracker, "user@example.com", 4)
        assert (await tracker.check_login_attempts("user@example.com")).allowed

    async def test_concurrent_failures_all_counted(self, tracker):
        counts = await asyncio.gather(
            *(tracker.record_failed_login("user@example.com") for _ in range(10))
        )
        assert sorted(counts) == list(range(1, 11))


class TestEnforce:
    async def test_enforce_raises_locked_out(self, tracker, clock):
        await _fail(tracker, "user@example.com", 5)
        with pytest.raises(LockedOutError) as excinfo:
            await tracker.enforce("user@example.com")
        err = excinfo.value
        assert err.status_code == 429
        assert err.error_code == "locked_out"
        assert err.retry_after == 15 * 60
        assert err.message == "Account locked. Try again in 15 minutes"

    async def test_enforce_passes_when_unlocked(self, tracker):
        status = await tracker.enforce("user@example.com")
        assert status.allowed
