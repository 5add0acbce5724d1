"""
auth/errors.py -- Error taxonomy for the authentication core.

Every class carries a stable outward code, an HTTP status and ONE generic
message. The specific cause of a failure travels in `reason`, which is logged
by the raiser and by the API exception handler but never rendered into a
response body. That is how the boundary avoids leaking whether an account
exists, whether a session expired or was revoked, or which staff check failed.

StoreUnavailable is deliberately not an authentication failure: it maps to 503
and is safe for the client to retry.
"""

from __future__ import annotations


class AuthError(Exception):
    """Base class for auth-core exceptions mapped to HTTP responses."""

    status_code: int = 400
    code: str = "auth_error"
    message: str = "Authentication error."

    def __init__(self, reason: str = "", *, message: str | None = None) -> None:
        super().__init__(reason or self.message)
        self.reason = reason
        if message is not None:
            self.message = message


class InvalidCredentials(AuthError):
    """Unknown identifier, wrong secret, or ineligible account (401)."""

    status_code = 401
    code = "invalid_credentials"
    message = "Invalid username or password."


class ChallengeExpired(AuthError):
    """The pending second-factor challenge is gone; log in again (401)."""

    status_code = 401
    code = "challenge_expired"
    message = "Verification expired. Please sign in again."


class ChallengeCodeInvalid(AuthError):
    """Wrong, out-of-window or replayed one-time code (401)."""

    status_code = 401
    code = "challenge_code_invalid"
    message = "Invalid verification code."


class Unauthenticated(AuthError):
    """No session, expired session or revoked session -- merged (401)."""

    status_code = 401
    code = "unauthenticated"
    message = "Authentication required."


class Forbidden(AuthError):
    """Role check or network check failed -- merged (403)."""

    status_code = 403
    code = "forbidden"
    message = "Access denied."


class RateLimited(AuthError):
    """Too many recent failures for this identifier or user (429)."""

    status_code = 429
    code = "rate_limited"
    message = "Too many attempts. Please try again later."

    def __init__(self, reason: str = "", *, retry_after: int = 60) -> None:
        super().__init__(reason)
        self.retry_after = max(1, int(retry_after))


class StoreUnavailable(AuthError):
    """The data store could not be reached. Retryable (503)."""

    status_code = 503
    code = "temporarily_unavailable"
    message = "Service temporarily unavailable. Please retry."


__all__ = [
    "AuthError",
    "InvalidCredentials",
    "ChallengeExpired",
    "ChallengeCodeInvalid",
    "Unauthenticated",
    "Forbidden",
    "RateLimited",
    "StoreUnavailable",
]
