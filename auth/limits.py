"""
auth/limits.py -- Failed-attempt limiting per identifier and per user.

slowapi (api/limiter.py) throttles raw request volume per client IP. This
module covers the other axis: repeated FAILURES against one account, no matter
how many IPs they come from. Counters live in the shared store so every worker
process sees the same numbers.

check() runs BEFORE the credential or code check. Once the failure budget for
the current window is spent, the attempt is refused with RateLimited even if
it would have succeeded -- the limiter, not the check, is the defense.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta

from auth.errors import RateLimited
from auth.store import AuthStore
from core.config import Settings, utcnow

logger = logging.getLogger("sharedthread.auth.limits")

LOGIN = "login"
TOTP = "totp"
REAUTH = "reauth"


@dataclass(frozen=True)
class LimitPolicy:
    max_failures: int
    window_seconds: int


class AttemptLimiter:
    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._clock = clock
        self._policies = {
            LOGIN: LimitPolicy(settings.login_max_failures, settings.login_failure_window_seconds),
            TOTP: LimitPolicy(settings.totp_max_failures, settings.totp_failure_window_seconds),
            REAUTH: LimitPolicy(settings.reauth_max_failures, settings.reauth_failure_window_seconds),
        }

    def policy(self, scope: str) -> LimitPolicy:
        return self._policies[scope]

    def check(self, scope: str, key: str) -> None:
        """Raise RateLimited if key has exhausted its failure budget."""
        record = self._store.get_failures(scope, key)
        if record is None:
            return
        count, window_started_at = record
        policy = self._policies[scope]
        window_ends = window_started_at + timedelta(seconds=policy.window_seconds)
        now = self._clock()
        if now >= window_ends:
            return
        if count >= policy.max_failures:
            retry_after = int((window_ends - now).total_seconds()) + 1
            logger.warning("Attempt refused: %s key=%s failures=%d", scope, key, count)
            raise RateLimited(f"{scope} failures exhausted", retry_after=retry_after)

    def record_failure(self, scope: str, key: str) -> int:
        policy = self._policies[scope]
        count = self._store.record_failure(scope, key, self._clock(), policy.window_seconds)
        logger.info("Failed %s attempt key=%s count=%d/%d", scope, key, count, policy.max_failures)
        return count

    def reset(self, scope: str, key: str) -> None:
        self._store.clear_failures(scope, key)

    def longest_window(self) -> int:
        return max(p.window_seconds for p in self._policies.values())
