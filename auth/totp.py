"""
auth/totp.py -- Time-based one-time password challenge (RFC 6238).

Flow:
  begin(user)               -> PendingAuthentication persisted, id returned to
                               the client as the challenge reference.
  verify(pending_id, code)  -> the user, once the code matches a time step in
                               [current - window, current + window] that has
                               not been consumed before.

Replay prevention: every accepted (user_id, time_step) pair is written to the
totp_used_steps table with an expiry just past the acceptance window. A second
submission of the same code inside that window hits the primary key and is
rejected. Rows expire on their own and are removed by the sweep, so the record
is bounded by (users x a few steps), not by history.

Code generation is pyotp; matching is done step-by-step here because the
replay record needs to know WHICH step matched, which pyotp.TOTP.verify() does
not report.
"""

from __future__ import annotations

import hmac
import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

import pyotp

from auth.errors import ChallengeCodeInvalid, ChallengeExpired
from auth.models import PendingAuthentication, User
from auth.store import AuthStore
from core.config import Settings, utcnow

logger = logging.getLogger("sharedthread.auth.totp")


def generate_secret() -> str:
    """Return a new random base32 shared secret (160 bits)."""
    return pyotp.random_base32(length=32)


def provisioning_uri(secret: str, account_name: str, issuer: str) -> str:
    """Build the otpauth:// URI an authenticator app scans at enrollment."""
    return pyotp.TOTP(secret).provisioning_uri(name=account_name, issuer_name=issuer)


class TOTPChallenge:
    """Second-factor challenge bound to a short-lived pending authentication."""

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock

    def _totp(self, secret: str) -> pyotp.TOTP:
        return pyotp.TOTP(secret, digits=self._settings.totp_digits, interval=self._settings.totp_interval_seconds)

    def time_step(self, at: datetime) -> int:
        return int(at.timestamp()) // self._settings.totp_interval_seconds

    def begin(self, user: User) -> PendingAuthentication:
        now = self._clock()
        pending = PendingAuthentication(
            id=secrets.token_urlsafe(32),
            user_id=user.id,
            created_at=now,
            expires_at=now + timedelta(seconds=self._settings.pending_auth_ttl_seconds),
        )
        self._store.insert_pending(pending)
        logger.info("Second factor challenge issued for user_id=%s", user.id)
        return pending

    def load(self, pending_id: str) -> tuple[PendingAuthentication, User]:
        """Resolve a live challenge and its user, or raise ChallengeExpired.

        Expired challenges are deleted on discovery.
        """
        pending = self._store.get_pending(pending_id) if pending_id else None
        if pending is None:
            raise ChallengeExpired("unknown challenge")
        if pending.is_expired(self._clock()):
            self._store.delete_pending(pending.id)
            raise ChallengeExpired("challenge expired")
        user = self._store.get_by_id(pending.user_id)
        if user is None or not user.is_active or not user.second_factor_enabled:
            self._store.delete_pending(pending.id)
            raise ChallengeExpired("user no longer eligible for challenge")
        return pending, user

    def check_code(self, user: User, code: str) -> int:
        """Match code against the acceptance window and consume its time step.

        Returns the matched time step. Raises ChallengeCodeInvalid for a
        malformed, out-of-window or replayed code.
        """
        code = (code or "").strip()
        if len(code) != self._settings.totp_digits or not code.isdigit():
            raise ChallengeCodeInvalid("malformed code")

        now = self._clock()
        totp = self._totp(user.totp_secret)
        window = self._settings.totp_valid_window
        current = self.time_step(now)
        matched: int | None = None
        for offset in range(-window, window + 1):
            candidate = totp.at(now, counter_offset=offset)
            if hmac.compare_digest(candidate, code):
                matched = current + offset
                break
        if matched is None:
            raise ChallengeCodeInvalid("code outside acceptance window")

        # Keep the record until the matched step can no longer be accepted.
        keep_for = (2 * window + 1) * self._settings.totp_interval_seconds
        if not self._store.record_totp_step(user.id, matched, now + timedelta(seconds=keep_for)):
            logger.warning("Replayed TOTP code for user_id=%s step=%s", user.id, matched)
            raise ChallengeCodeInvalid("code already used")
        return matched

    def verify(self, pending_id: str, code: str) -> tuple[PendingAuthentication, User]:
        """Validate code for the given challenge. The challenge is not consumed here.

        The caller promotes the returned pending authentication into a session.
        On failure the challenge stays usable until its own expiry.
        """
        pending, user = self.load(pending_id)
        self.check_code(user, code)
        return pending, user
