"""
auth/sessions.py -- Server-side session lifecycle.

Expiry policy: ABSOLUTE. expires_at is created_at + SESSION_LIFETIME_SECONDS
and is never moved. validate() refreshes last_accessed_at (and the user's
last_active_at) for bookkeeping only.

Identifiers: secrets.token_urlsafe(32) -- 256 bits from the OS CSPRNG.
Concurrent creations never need coordination; in the astronomically unlikely
event of a primary-key collision the insert fails and a fresh id is drawn.

Every validation failure leaves as a single Unauthenticated. Whether the id
was unknown, expired, or belonged to a removed user is logged at INFO and
goes no further.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta

from sqlalchemy.exc import IntegrityError

from auth.errors import StoreUnavailable, Unauthenticated
from auth.models import ClientContext, PendingAuthentication, Session, User
from auth.store import AuthStore
from core.config import Settings, utcnow

logger = logging.getLogger("sharedthread.auth.sessions")

_MAX_ID_ATTEMPTS = 3


def new_session_id() -> str:
    return secrets.token_urlsafe(32)


class SessionManager:
    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._lifetime = timedelta(seconds=settings.session_lifetime_seconds)
        self._clock = clock

    def _build(self, user_id: int, client: ClientContext | None) -> Session:
        now = self._clock()
        client = client or ClientContext()
        return Session(
            id=new_session_id(),
            user_id=user_id,
            created_at=now,
            expires_at=now + self._lifetime,
            last_accessed_at=now,
            ip_address=client.ip_address,
            user_agent=client.user_agent[:512] if client.user_agent else None,
        )

    def create(self, user_id: int, client: ClientContext | None = None) -> Session:
        """Issue and persist a new session for a fully authenticated user."""
        for _ in range(_MAX_ID_ATTEMPTS):
            session = self._build(user_id, client)
            try:
                self._store.insert_session(session)
            except IntegrityError:
                logger.warning("Session id collision; drawing a new id")
                continue
            logger.info("Session issued for user_id=%s ip=%s", user_id, session.ip_address)
            return session
        raise StoreUnavailable("could not allocate a unique session id")

    def promote(self, pending: PendingAuthentication, client: ClientContext | None = None) -> Session | None:
        """Consume a pending authentication and issue its session in one transaction.

        Returns None if the pending authentication was already consumed or has
        expired in the meantime.
        """
        for _ in range(_MAX_ID_ATTEMPTS):
            session = self._build(pending.user_id, client)
            try:
                promoted = self._store.promote_pending(pending.id, session, self._clock())
            except IntegrityError:
                logger.warning("Session id collision during promotion; drawing a new id")
                continue
            if not promoted:
                return None
            logger.info("Session issued after second factor for user_id=%s", pending.user_id)
            return session
        raise StoreUnavailable("could not allocate a unique session id")

    def validate(self, session_id: str | None) -> tuple[User, Session]:
        """Return (user, session) for a live session or raise Unauthenticated."""
        if not session_id:
            raise Unauthenticated("no session id")
        session = self._store.get_session(session_id)
        if session is None:
            logger.info("Session rejected: unknown id")
            raise Unauthenticated("unknown session")

        now = self._clock()
        if session.is_expired(now):
            self._discard(session.id)
            logger.info("Session rejected: expired (user_id=%s)", session.user_id)
            raise Unauthenticated("expired session")

        user = self._store.get_by_id(session.user_id)
        if user is None or not user.is_active:
            self._discard(session.id)
            logger.info("Session rejected: owner missing or inactive (user_id=%s)", session.user_id)
            raise Unauthenticated("session owner unavailable")

        self._store.touch_session(session.id, now)
        self._store.touch_last_active(user.id, now)
        session.last_accessed_at = now
        return user, session

    def _discard(self, session_id: str) -> None:
        """Best-effort delete; the row is rejected again next time if this fails."""
        try:
            self._store.delete_session(session_id)
        except StoreUnavailable:
            logger.warning("Could not delete rejected session; will retry on next sweep")

    def revoke(self, session_id: str | None) -> None:
        """Delete a session. Unknown or already-expired ids succeed silently."""
        if not session_id:
            return
        if self._store.delete_session(session_id):
            logger.info("Session revoked")

    def revoke_all(self, user_id: int, *, keep: str | None = None) -> int:
        """Delete every session of a user. Returns the number removed."""
        removed = self._store.delete_user_sessions(user_id, keep=keep)
        logger.info("Revoked %d session(s) for user_id=%s", removed, user_id)
        return removed

    def sweep_expired(self) -> int:
        """Delete every expired session row. Returns the number removed."""
        return self._store.delete_expired_sessions(self._clock())

    def active_sessions(self, user_id: int) -> list[Session]:
        now = self._clock()
        return [s for s in self._store.list_user_sessions(user_id) if not s.is_expired(now)]
