"""
auth/credentials.py -- Password hashing and credential verification.

Security design decisions:
  Passwords: bcrypt, used directly (no passlib wrapper). Bcrypt's cost factor
       makes brute-force expensive for low-entropy secrets, and checkpw()
       compares in constant time.

  Enumeration resistance [C1]: verify() ALWAYS runs bcrypt -- against the
       real hash when the account exists and has a password, against
       _DUMMY_HASH otherwise -- and raises the same InvalidCredentials for
       every failure cause. Response time and body are the same for "no such
       user", "wrong password" and "account not eligible".

  Eligibility policy: inactive accounts never log in. Unverified email and
       missing admin approval block login only when the corresponding
       REQUIRE_* setting is on. The eligibility check runs AFTER the password
       check so an attacker without the password learns nothing about the
       account's state.

Layer rule: no imports from api/. Import from core/ is allowed.
"""

from __future__ import annotations

import logging

import bcrypt

from auth.errors import InvalidCredentials
from auth.models import User, VerifiedCredentials
from auth.store import AuthStore
from core.config import Settings

logger = logging.getLogger("sharedthread.auth.credentials")

# bcrypt accepts at most 72 bytes of input.
MAX_PASSWORD_BYTES = 72


def password_too_long(plain: str) -> bool:
    return len(plain.encode("utf-8")) > MAX_PASSWORD_BYTES


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Raises ValueError past MAX_PASSWORD_BYTES; callers validate new passwords first.
    """
    if password_too_long(plain):
        raise ValueError(f"password exceeds {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    Never raises: a malformed stored hash is simply a non-match.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except (ValueError, TypeError):
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("sharedthread_timing_dummy")


class CredentialVerifier:
    """Check an identifier + secret pair against stored credentials."""

    def __init__(self, store: AuthStore, settings: Settings) -> None:
        self._store = store
        self._settings = settings

    def lookup(self, identifier: str) -> User | None:
        """Resolve a username or an email address to a user record."""
        identifier = identifier.strip()
        if not identifier:
            return None
        if "@" in identifier:
            return self._store.get_by_email(identifier)
        return self._store.get_by_username(identifier)

    def verify(self, identifier: str, secret: str) -> VerifiedCredentials:
        """Authenticate a local identifier/password login with timing equalization.

        Returns VerifiedCredentials on success. Raises InvalidCredentials on
        any failure; the specific cause is only logged.
        """
        user = self.lookup(identifier)
        if user is None or user.hashed_password is None:
            # Equalize timing -- do NOT return before running bcrypt [C1]
            verify_password(secret, _DUMMY_HASH)
            reason = "unknown identifier" if user is None else "no local password"
            logger.info("Login rejected: %s", reason)
            raise InvalidCredentials(reason)

        if not verify_password(secret, user.hashed_password):
            logger.info("Login rejected: wrong password for user_id=%s", user.id)
            raise InvalidCredentials("wrong password")

        ineligible = self.ineligibility_reason(user)
        if ineligible:
            logger.warning("Login rejected: user_id=%s %s", user.id, ineligible)
            raise InvalidCredentials(ineligible)

        return VerifiedCredentials(user=user, second_factor_required=user.second_factor_enabled)

    def ineligibility_reason(self, user: User) -> str | None:
        """Return why this account may not log in, or None if it may."""
        if not user.is_active:
            return "account inactive"
        if self._settings.require_email_verified and not user.email_verified:
            return "email not verified"
        if self._settings.require_approval and not user.is_approved:
            return "account not approved"
        return None
