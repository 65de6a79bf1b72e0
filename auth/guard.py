"""
auth/guard.py -- Brute-force guard over the append-only login attempt log.

is_locked(email) counts failed attempts for the identity inside a trailing
window and reports a lock once the threshold is reached. record() appends
every outcome. Attempts against emails that have no account are recorded
exactly like real ones so lockout behaviour cannot be used to probe for
accounts.

Failure policy: the guard is a side channel of login. A storage failure while
recording or pruning is logged and swallowed. A storage failure while
checking reports "not locked" so an outage of the attempt log does not lock
every user out.
"""

from __future__ import annotations

import logging
from datetime import timedelta

from auth.clock import Clock, to_iso, utcnow
from auth.errors import AccountLocked, ServiceUnavailable
from auth.models import LoginAttempt
from auth.store import SecurityStore, storage_guard
from core.config import SecurityPolicy

logger = logging.getLogger("krm.auth.guard")


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class BruteForceGuard:
    def __init__(self, store: SecurityStore, policy: SecurityPolicy | None = None, clock: Clock = utcnow) -> None:
        self.store = store
        self.policy = policy or SecurityPolicy()
        self.clock = clock

    @property
    def retry_after(self) -> int:
        return self.policy.lockout_window_seconds

    def is_locked(self, email: str) -> bool:
        since = self.clock() - timedelta(seconds=self.policy.lockout_window_seconds)
        try:
            with storage_guard("lockout check"):
                failures = self.store.count_failed_attempts(normalize_email(email), to_iso(since))
        except ServiceUnavailable:
            logger.error("Lockout check unavailable -- allowing the attempt")
            return False
        return failures >= self.policy.lockout_threshold

    def check(self, email: str) -> None:
        """Raise AccountLocked (carrying retry_after) if email is locked."""
        if self.is_locked(email):
            logger.warning("Login refused for locked account")
            raise AccountLocked(self.retry_after, "Too many failed login attempts")

    def record(self, email: str, success: bool, ip_address: str | None = None, user_agent: str | None = None) -> None:
        """Append an attempt. Never raises."""
        now = self.clock()
        attempt = LoginAttempt(
            email=normalize_email(email),
            success=success,
            ip_address=ip_address or "unknown",
            user_agent=user_agent or "unknown",
        )
        try:
            with storage_guard("login attempt insert"):
                self.store.record_login_attempt(attempt, to_iso(now))
        except ServiceUnavailable:
            logger.warning("Login attempt could not be recorded", exc_info=True)
        self._prune(now)

    def clear_failures(self, email: str) -> None:
        """Drop failed attempts for email (after a successful login). Never raises."""
        try:
            with storage_guard("failed attempt clear"):
                self.store.clear_failed_attempts(normalize_email(email))
        except ServiceUnavailable:
            logger.warning("Failed attempts could not be cleared", exc_info=True)

    def _prune(self, now) -> None:
        cutoff = now - timedelta(seconds=self.policy.login_attempt_retention_seconds)
        try:
            with storage_guard("login attempt prune"):
                removed = self.store.prune_login_attempts(to_iso(cutoff))
        except ServiceUnavailable:
            logger.warning("Login attempt pruning failed", exc_info=True)
            return
        if removed:
            logger.debug("Pruned %d login attempts", removed)
