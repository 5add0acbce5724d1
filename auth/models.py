"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, near-zero logic). Dataclasses own
domain shape; the store, services and routes do the work.

Role is a closed enumeration. Anything the store hands back that is not one of
its members becomes role=None on the User, so "unknown role" can only ever be
represented as the absence of a role -- never as a free-form string that some
comparison elsewhere might accidentally accept.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    MEMBER = "member"
    ADMIN = "admin"

    @classmethod
    def parse(cls, value: object) -> Role | None:
        """Case-normalized exact match against the enumeration.

        Returns None for None, non-strings, and any value outside the closed
        set. Leading/trailing whitespace is NOT stripped -- " admin" is
        malformed, not an admin.
        """
        if isinstance(value, Role):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.lower())
        except ValueError:
            return None


@dataclass
class User:
    """A local account. Owned by the store; read and updated by the auth core.

    hashed_password is None for federated-only users (no local password).
    totp_secret is a base32 string; its presence enables the second factor.
    role is None when the stored value is missing or malformed.
    """

    username: str
    email: str
    role: Role | None = Role.MEMBER
    id: int | None = None
    display_name: str = ""
    hashed_password: str | None = None
    totp_secret: str | None = None
    email_verified: bool = False
    is_approved: bool = True
    is_active: bool = True
    oauth_provider: str | None = None
    oauth_subject: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    last_active_at: str | None = None

    @property
    def second_factor_enabled(self) -> bool:
        return bool(self.totp_secret)


@dataclass
class Session:
    """A server-issued, time-bounded capability.

    expires_at is fixed at issuance. last_accessed_at moves on every
    successful validation.
    """

    id: str
    user_id: int
    created_at: datetime
    expires_at: datetime
    last_accessed_at: datetime
    ip_address: str | None = None
    user_agent: str | None = None

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass
class PendingAuthentication:
    """Password verified, second factor outstanding. Grants nothing by itself."""

    id: str
    user_id: int
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


@dataclass(frozen=True)
class ClientContext:
    """Caller metadata recorded on the session at issuance."""

    ip_address: str | None = None
    user_agent: str | None = None


@dataclass(frozen=True)
class AuthorizationDecision:
    """Output of a pure authorization check: allow/deny plus a reason code.

    The reason is for logs. Callers turn a deny into a generic 403.
    """

    allowed: bool
    reason: str

    def __bool__(self) -> bool:
        return self.allowed


@dataclass(frozen=True)
class VerifiedCredentials:
    user: User
    second_factor_required: bool


@dataclass
class LoginResult:
    """Outcome of a login step: exactly one of session / pending is set."""

    user: User
    session: Session | None = None
    pending: PendingAuthentication | None = None

    @property
    def authenticated(self) -> bool:
        return self.session is not None


@dataclass(frozen=True)
class FederatedIdentity:
    """A verified identity produced by an external provider exchange."""

    provider: str
    external_id: str
    email: str
    display_name: str = ""
