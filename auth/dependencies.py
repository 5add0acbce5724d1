"""
auth/dependencies.py -- FastAPI Depends() helpers for authentication.

One auth method: the session cookie. Its value decodes to a session id, and
SessionManager.validate() turns that into (User, Session) against the store.
There is no Bearer or API-key path; a session id is the only credential a
browser presents after login.

get_auth_context() raises Unauthenticated (401) when the cookie is missing,
tampered, unknown, expired or revoked -- all with the same response.
get_current_user() unwraps the user.
require_staff() adds role AND private-network checks. Both are evaluated,
and either failing produces the same generic 403 "Access denied." The
specific reason goes to the log only.

Everything hangs off request.app.state.auth (an AuthService built in the
lifespan), so tests can swap the store without touching module globals.

Layer rule: no imports from api/.
  auth/dependencies.py may import from fastapi (for Depends/Request) because
  this module is part of the FastAPI dependency injection system.
"""

from __future__ import annotations

import logging

from fastapi import Depends, Request

from auth.cookies import SessionCookie
from auth.errors import Forbidden
from auth.models import ClientContext, Role, Session, User
from auth.service import AuthService

logger = logging.getLogger("sharedthread.auth.dependencies")


def get_auth_service(request: Request) -> AuthService:
    return request.app.state.auth


def get_session_cookie(request: Request) -> SessionCookie:
    return request.app.state.session_cookie


def client_ip(request: Request) -> str | None:
    """Resolve the caller's IP via the network gate's header precedence."""
    auth: AuthService = request.app.state.auth
    peer = request.client.host if request.client else None
    return auth.network.resolve(request.headers, peer)


def client_context(request: Request) -> ClientContext:
    return ClientContext(
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )


def get_auth_context(
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    cookie: SessionCookie = Depends(get_session_cookie),
) -> tuple[User, Session]:
    """Require a valid session. Raises Unauthenticated otherwise.

    Use as a FastAPI dependency:
        @router.get("/protected")
        async def route(ctx: tuple[User, Session] = Depends(get_auth_context)): ...
    """
    return auth.sessions.validate(cookie.get(request))


def get_current_user(ctx: tuple[User, Session] = Depends(get_auth_context)) -> User:
    return ctx[0]


def require_staff(
    request: Request,
    user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
) -> User:
    """Require the admin role AND a trusted-network origin.

    Both checks always run so the log records every failing reason; the
    caller only ever sees "Access denied."
    """
    ip = client_ip(request)
    role = auth.roles.authorize(user, Role.ADMIN)
    network = auth.network.check(ip)
    if not (role and network):
        reasons = [d.reason for d in (role, network) if not d]
        logger.warning(
            "Staff access denied: user_id=%s ip=%s reasons=%s",
            user.id,
            ip,
            ",".join(reasons),
        )
        raise Forbidden(";".join(reasons))
    return user

