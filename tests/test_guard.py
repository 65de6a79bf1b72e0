"""Unit tests for auth/guard.py -- sliding-window account lockout.

Covers:
- locked exactly when failures within the window reach the threshold
- failures outside the trailing window do not count
- successful attempts never count; clear_failures() resets the lock
- email identity is case-insensitive
- unknown emails are recorded like real ones
- storage failures: record/clear are swallowed, is_locked fails open
- attempts older than the retention window are pruned
"""

import pytest

from auth.errors import AccountLocked
from auth.guard import BruteForceGuard

from conftest import storage_failure

EMAIL = "owner@acme.io"


@pytest.fixture
def guard(store, policy, clock):
    return BruteForceGuard(store, policy, clock)


def _fail(guard, times, email=EMAIL):
    for _ in range(times):
        guard.record(email, success=False, ip_address="203.0.113.9", user_agent="pytest")


class TestLockout:
    def test_not_locked_initially(self, guard):
        assert guard.is_locked(EMAIL) is False

    def test_locks_at_threshold(self, guard):
        _fail(guard, 4)
        assert guard.is_locked(EMAIL) is False
        _fail(guard, 1)
        assert guard.is_locked(EMAIL) is True

    def test_check_raises_with_retry_after(self, guard):
        _fail(guard, 5)
        with pytest.raises(AccountLocked) as exc_info:
            guard.check(EMAIL)
        assert exc_info.value.retry_after == 15 * 60
        assert exc_info.value.status_code == 429

    def test_window_slides(self, guard, clock):
        _fail(guard, 5)
        clock.advance(15 * 60 + 1)
        assert guard.is_locked(EMAIL) is False

    def test_old_failures_do_not_combine_with_new(self, guard, clock):
        _fail(guard, 3)
        clock.advance(15 * 60 + 1)
        _fail(guard, 3)
        assert guard.is_locked(EMAIL) is False

    def test_successes_do_not_count(self, guard):
        for _ in range(10):
            guard.record(EMAIL, success=True)
        assert guard.is_locked(EMAIL) is False

    def test_clear_failures_unlocks(self, guard):
        _fail(guard, 5)
        guard.record(EMAIL, success=True)
        guard.clear_failures(EMAIL)
        assert guard.is_locked(EMAIL) is False

    def test_email_case_insensitive(self, guard):
        _fail(guard, 5, email="Owner@ACME.io ")
        assert guard.is_locked(EMAIL) is True

    def test_other_accounts_unaffected(self, guard):
        _fail(guard, 5)
        assert guard.is_locked("teacher@acme.io") is False


class TestAuditLog:
    def test_unknown_emails_recorded(self, guard, store):
        _fail(guard, 2, email="nobody@nowhere.test")
        attempts = store.list_login_attempts("nobody@nowhere.test")
        assert len(attempts) == 2
        assert attempts[0].ip_address == "203.0.113.9"
        assert attempts[0].user_agent == "pytest"
        assert attempts[0].success is False

    def test_missing_client_details_default(self, guard, store):
        guard.record(EMAIL, success=True)
        attempt = store.list_login_attempts(EMAIL)[0]
        assert attempt.ip_address == "unknown"
        assert attempt.user_agent == "unknown"

    def test_retention_pruning(self, guard, store, clock):
        _fail(guard, 2)
        clock.advance(hours=25)
        guard.record(EMAIL, success=True)
        attempts = store.list_login_attempts(EMAIL)
        assert len(attempts) == 1
        assert attempts[0].success is True


class TestStorageFailure:
    def test_record_failure_swallowed(self, guard, store, monkeypatch):
        monkeypatch.setattr(store, "record_login_attempt", storage_failure)
        guard.record(EMAIL, success=False)

    def test_prune_failure_swallowed(self, guard, store, monkeypatch):
        monkeypatch.setattr(store, "prune_login_attempts", storage_failure)
        guard.record(EMAIL, success=False)
        assert len(store.list_login_attempts(EMAIL)) == 1

    def test_clear_failure_swallowed(self, guard, store, monkeypatch):
        monkeypatch.setattr(store, "clear_failed_attempts", storage_failure)
        guard.clear_failures(EMAIL)

    def test_lock_check_fails_open(self, guard, store, monkeypatch):
        _fail(guard, 5)
        monkeypatch.setattr(store, "count_failed_attempts", storage_failure)
        assert guard.is_locked(EMAIL) is False
