"""
auth/ratelimit.py -- Sliding-window rate limiter backed by persisted hit rows.

check(key, endpoint):
  1. count hits for (key, endpoint) newer than now - window
  2. count >= limit  -> raise RateLimited(retry_after=window)
  3. otherwise record this hit and return

Every call also prunes hits older than the retention window with a small
probability (policy.rate_limit_prune_probability), bounding cleanup cost.

Storage failures degrade open by default: the request proceeds unlimited and
the failure is logged. policy.rate_limit_fail_open=False rejects instead.

Keys are the authenticated user id, or "ip:<address>" for anonymous callers
(see rate_limit_key()).
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from datetime import timedelta

from auth.clock import Clock, to_iso, utcnow
from auth.errors import RateLimited, ServiceUnavailable
from auth.store import SecurityStore, storage_guard
from core.config import SecurityPolicy

logger = logging.getLogger("krm.auth.ratelimit")


def rate_limit_key(user_id: str | int | None, ip_address: str | None) -> str:
    if user_id is not None and user_id != "":
        return str(user_id)
    return f"ip:{ip_address or 'unknown'}"


class RateLimiter:
    def __init__(
        self,
        store: SecurityStore,
        policy: SecurityPolicy | None = None,
        clock: Clock = utcnow,
        rng: Callable[[], float] = random.random,
    ) -> None:
        self.store = store
        self.policy = policy or SecurityPolicy()
        self.clock = clock
        self.rng = rng

    def check(self, key: str, endpoint: str, max_requests: int | None = None, window_seconds: int | None = None) -> None:
        """Count and record one request. Raises RateLimited when over the limit."""
        limit = max_requests if max_requests is not None else self.policy.rate_limit_max_requests
        window = window_seconds if window_seconds is not None else self.policy.rate_limit_window_seconds
        now = self.clock()

        try:
            with storage_guard("rate limit check"):
                count = self.store.count_hits(key, endpoint, to_iso(now - timedelta(seconds=window)))
                if count < limit:
                    self.store.record_hit(key, endpoint, to_iso(now))
        except ServiceUnavailable:
            if self.policy.rate_limit_fail_open:
                logger.error("Rate limit storage unavailable -- allowing %s %s", key, endpoint)
                return
            logger.error("Rate limit storage unavailable -- rejecting %s %s", key, endpoint)
            raise RateLimited(window, "Rate limit storage unavailable")

        if self.rng() < self.policy.rate_limit_prune_probability:
            self._prune(now)

        if count >= limit:
            logger.info("Rate limit hit for %s on %s (%d/%d)", key, endpoint, count, limit)
            raise RateLimited(window, f"{count} requests in {window}s")

    def allowed(self, key: str, endpoint: str, max_requests: int | None = None) -> bool:
        try:
            self.check(key, endpoint, max_requests)
        except RateLimited:
            return False
        return True

    def _prune(self, now) -> None:
        cutoff = now - timedelta(seconds=self.policy.rate_limit_retention_seconds)
        try:
            with storage_guard("rate limit prune"):
                removed = self.store.prune_hits(to_iso(cutoff))
        except ServiceUnavailable:
            logger.warning("Rate limit pruning failed", exc_info=True)
            return
        logger.debug("Pruned %d rate limit hits", removed)
