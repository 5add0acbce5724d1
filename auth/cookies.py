"""
auth/cookies.py -- Session cookie codec and the request-scoped cookie capability.

Security design decisions:
  Capability, not claims: the cookie carries ONLY the session id ("sid") and
       the session's absolute expiry ("exp"). No user id, username or role.
       Every authorization decision therefore needs a round trip through
       SessionManager.validate(); a stolen-but-revoked cookie is worthless
       even though its signature is still good.

  Signing: python-jose HS256 with SECRET_KEY. Tampered, truncated or foreign
       values decode to None -- the route layer treats that exactly like a
       missing cookie.

  Attributes: httponly (no JS access), samesite=lax, secure when
       SECURE_COOKIES=true, path=/ and NO Domain attribute by default so the
       cookie is host-only. clear() repeats the same path/domain/secure/
       samesite attributes with max-age 0 and an expiry in 1970; browsers only
       drop a cookie when those attributes match the ones it was set with.
"""

from __future__ import annotations

import logging
from datetime import datetime

from fastapi import Request, Response
from jose import JWTError, jwt

from auth.models import Session
from core.config import Settings, utcnow

logger = logging.getLogger("sharedthread.auth.cookies")

_ALGORITHM = "HS256"
_TOKEN_TYPE = "session"


class CookieCodec:
    """Encode a session id into an opaque signed cookie value and back."""

    def __init__(self, secret_key: str) -> None:
        self._key = secret_key

    def encode(self, session: Session) -> str:
        payload = {
            "sid": session.id,
            "typ": _TOKEN_TYPE,
            "exp": int(session.expires_at.timestamp()),
        }
        return jwt.encode(payload, self._key, algorithm=_ALGORITHM)

    def decode(self, value: str | None) -> str | None:
        """Return the session id carried by value, or None on any failure."""
        if not value:
            return None
        try:
            payload = jwt.decode(value, self._key, algorithms=[_ALGORITHM])
        except JWTError:
            return None
        if payload.get("typ") != _TOKEN_TYPE:
            return None
        sid = payload.get("sid")
        return sid if isinstance(sid, str) and sid else None


class SessionCookie:
    """Explicit get/set/clear handle for the session cookie.

    Handed to route handlers through Depends(); nothing else reads or writes
    the cookie.
    """

    def __init__(self, settings: Settings, codec: CookieCodec | None = None) -> None:
        self.name = settings.session_cookie_name
        self._codec = codec or CookieCodec(settings.secret_key)
        self._secure = settings.secure_cookies
        self._domain = settings.cookie_domain
        self._path = settings.cookie_path

    def get(self, request: Request) -> str | None:
        """Return the session id from the request cookie, or None."""
        return self._codec.decode(request.cookies.get(self.name))

    def set(self, response: Response, session: Session, now: datetime | None = None) -> None:
        now = now or utcnow()
        max_age = max(0, int((session.expires_at - now).total_seconds()))
        response.set_cookie(
            self.name,
            value=self._codec.encode(session),
            max_age=max_age,
            path=self._path,
            domain=self._domain,
            secure=self._secure,
            httponly=True,
            samesite="lax",
        )

    def clear(self, response: Response) -> None:
        response.delete_cookie(
            self.name,
            path=self._path,
            domain=self._domain,
            secure=self._secure,
            httponly=True,
            samesite="lax",
        )
