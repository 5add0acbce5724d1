"""
auth/roles.py -- Role-based authorization.

Pure functions over the closed Role enumeration. No state, no I/O, safe to
call any number of times. Unknown or malformed roles deny; there is no
implicit default in either direction.
"""

from __future__ import annotations

from collections.abc import Iterable

from auth.models import AuthorizationDecision, Role, User


def _required_set(required: Role | str | Iterable[Role | str]) -> frozenset[Role]:
    if isinstance(required, (Role, str)):
        required = [required]
    roles = set()
    for item in required:
        role = Role.parse(item)
        if role is None:
            raise ValueError(f"Unknown required role: {item!r}")
        roles.add(role)
    return frozenset(roles)


def authorize(user: User | None, required: Role | str | Iterable[Role | str]) -> AuthorizationDecision:
    """Allow only if the user's role is an exact member of the required set."""
    allowed = _required_set(required)
    raw = getattr(user, "role", None) if user is not None else None
    if raw is None:
        return AuthorizationDecision(False, "role_missing")
    role = Role.parse(raw)
    if role is None:
        return AuthorizationDecision(False, "role_unknown")
    if role not in allowed:
        return AuthorizationDecision(False, "role_insufficient")
    return AuthorizationDecision(True, "ok")


class RoleAuthorizer:
    """Object form of authorize() for dependency wiring."""

    def authorize(self, user: User | None, required: Role | str | Iterable[Role | str]) -> AuthorizationDecision:
        return authorize(user, required)

    def is_admin(self, user: User | None) -> bool:
        return authorize(user, Role.ADMIN).allowed
