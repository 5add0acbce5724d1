"""
api/routes/v1/auth.py -- Authentication REST endpoints.

Routes:
  POST   /api/v1/auth/login                      -- password login; cookie or TOTP challenge
  POST   /api/v1/auth/totp                       -- answer the TOTP challenge; sets cookie
  POST   /api/v1/auth/logout                     -- revoke session, always clear cookie; 200
  GET    /api/v1/auth/me                         -- current user info (requires auth)
  POST   /api/v1/auth/password                   -- change password; revokes every session
  POST   /api/v1/auth/totp/enroll                -- new TOTP secret + otpauth URI (requires auth)
  POST   /api/v1/auth/totp/confirm               -- store the secret after a valid code
  DELETE /api/v1/auth/totp                       -- remove the second factor (password required)
  GET    /api/v1/auth/providers                  -- list enabled OAuth providers (public)
  GET    /api/v1/auth/oauth/{provider}           -- redirect to the provider
  GET    /api/v1/auth/oauth/{provider}/callback  -- provider callback; cookie or TOTP challenge

Security:
  [H2] POST /login, POST /totp, POST /password and DELETE /totp are
       rate-limited per IP (LOGIN_RATE_LIMIT), on top of the per-identifier /
       per-user failure counters in auth/limits.py.
  [C1] CredentialVerifier.verify() runs bcrypt for unknown identifiers too --
       never look a user up and compare hashes inline here.
  [M5] Cache-Control: no-store on every response that sets or clears the cookie.
  Failures surface as AuthError subclasses; api/main.py renders them with a
  generic message and logs the internal reason.
"""

from __future__ import annotations

import logging
from urllib.parse import urlencode

from authlib.integrations.starlette_client import OAuthError
from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from api.limiter import limiter, login_rate_limit
from api.models import (
    LoginRequest,
    LoginResponse,
    LoginStatus,
    MeResponse,
    OAuthProviderInfo,
    PasswordChangeRequest,
    StatusResponse,
    TOTPConfirmRequest,
    TOTPDisableRequest,
    TOTPEnrollResponse,
    TOTPRequest,
)
from auth.cookies import SessionCookie
from auth.dependencies import (
    client_context,
    get_auth_context,
    get_auth_service,
    get_current_user,
    get_session_cookie,
)
from auth.errors import AuthError, StoreUnavailable
from auth.models import ClientContext, LoginResult, Session, User
from auth.oauth import get_enabled_providers, get_federated_identity
from auth.service import AuthService

logger = logging.getLogger("sharedthread.api.auth")

# Auth policy:
# - POST   /auth/login, /auth/totp:          public -- these establish the session
# - POST   /auth/logout:                     public -- clearing a cookie needs no prior auth
# - GET    /auth/providers, /auth/oauth/*:   public -- login page renders provider buttons
# - everything else:                        requires a valid session (get_current_user)
router = APIRouter()


def _no_store(resp: Response) -> Response:
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


def _login_response(result: LoginResult, cookie: SessionCookie) -> JSONResponse:
    """Render a LoginResult. Only a completed login carries the cookie."""
    if result.authenticated:
        body = LoginResponse(status=LoginStatus.authenticated, user=MeResponse.from_user(result.user))
        resp = JSONResponse(content=body.model_dump(mode="json", exclude_none=True))
        cookie.set(resp, result.session)
    else:
        body = LoginResponse(
            status=LoginStatus.second_factor_required,
            challenge_id=result.pending.id,
            expires_at=result.pending.expires_at,
        )
        resp = JSONResponse(content=body.model_dump(mode="json", exclude_none=True))
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Login state machine
# ---------------------------------------------------------------------------


@limiter.limit(login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
def login(
    request: Request,
    body: LoginRequest,
    auth: AuthService = Depends(get_auth_service),
    cookie: SessionCookie = Depends(get_session_cookie),
    client: ClientContext = Depends(client_context),
) -> JSONResponse:
    """Verify username/email and password.

    Returns status=authenticated with the session cookie, or
    status=second_factor_required with a challenge_id and no cookie.
    Wrong password and unknown identifier produce the identical 401 [C1].
    """
    result = auth.login(body.identifier, body.password, client)
    return _login_response(result, cookie)


@limiter.limit(login_rate_limit)  # [H2]
@router.post("/auth/totp", response_model=LoginResponse)
def verify_totp(
    request: Request,
    body: TOTPRequest,
    auth: AuthService = Depends(get_auth_service),
    cookie: SessionCookie = Depends(get_session_cookie),
    client: ClientContext = Depends(client_context),
) -> JSONResponse:
    """Answer a pending second-factor challenge with a 6-digit code.

    A wrong code leaves the challenge open until it expires or the per-user
    failure limit trips; a correct code consumes it and issues the session.
    """
    result = auth.verify_second_factor(body.challenge_id, body.code, client)
    return _login_response(result, cookie)


@router.post("/auth/logout", response_model=StatusResponse)
def logout(
    request: Request,
    auth: AuthService = Depends(get_auth_service),
    cookie: SessionCookie = Depends(get_session_cookie),
) -> JSONResponse:
    """Revoke the session server-side and clear the cookie.

    The cookie is cleared even when there was no session or the store could
    not be reached; the browser must never keep a cookie after logout.
    """
    resp = JSONResponse(content=StatusResponse(status="logged_out").model_dump())
    try:
        auth.logout(cookie.get(request))
    except StoreUnavailable:
        logger.warning("Logout could not revoke the session server-side; clearing cookie anyway")
    except Exception:
        logger.exception("Logout failed server-side; clearing cookie anyway")
    cookie.clear(resp)
    return _no_store(resp)


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(response: Response, current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return the public identity of the session's user. Never secret material."""
    _no_store(response)
    return MeResponse.from_user(current_user)


@limiter.limit(login_rate_limit)  # [H2] current-password guesses
@router.post("/auth/password", response_model=StatusResponse)
def change_password(
    request: Request,
    body: PasswordChangeRequest,
    ctx: tuple[User, Session] = Depends(get_auth_context),
    auth: AuthService = Depends(get_auth_service),
    cookie: SessionCookie = Depends(get_session_cookie),
    client: ClientContext = Depends(client_context),
) -> JSONResponse:
    """Change the password. Every existing session (this one included) is revoked
    and a fresh session cookie is issued to the caller."""
    user, _session = ctx
    session = auth.change_password(user, body.current_password, body.new_password, client)
    resp = JSONResponse(content=StatusResponse(status="password_changed").model_dump())
    cookie.set(resp, session)
    return _no_store(resp)


@router.post("/auth/totp/enroll", response_model=TOTPEnrollResponse)
def enroll_totp(
    response: Response,
    current_user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
) -> TOTPEnrollResponse:
    """Generate a TOTP secret for the caller. Nothing is stored until /confirm."""
    secret, uri = auth.start_totp_enrollment(current_user)
    _no_store(response)
    return TOTPEnrollResponse(secret=secret, provisioning_uri=uri)


@router.post("/auth/totp/confirm", response_model=StatusResponse)
def confirm_totp(
    body: TOTPConfirmRequest,
    current_user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
) -> StatusResponse:
    """Enable the second factor once the authenticator proves it has the secret."""
    auth.confirm_totp_enrollment(current_user, body.secret, body.code)
    return StatusResponse(status="second_factor_enabled")


@limiter.limit(login_rate_limit)  # [H2]
@router.delete("/auth/totp", response_model=StatusResponse)
def disable_totp(
    request: Request,
    body: TOTPDisableRequest,
    current_user: User = Depends(get_current_user),
    auth: AuthService = Depends(get_auth_service),
) -> StatusResponse:
    """Remove the second factor. Requires the current password."""
    auth.disable_totp(current_user, body.password)
    return StatusResponse(status="second_factor_disabled")


# ---------------------------------------------------------------------------
# Federation (OAuth / OIDC)
# ---------------------------------------------------------------------------


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(auth: AuthService = Depends(get_auth_service)) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers.

    Public endpoint -- the login page calls this to decide which provider
    buttons to render. Returns an empty list if no OAuth env vars are set.
    """
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(auth.settings)]


def _login_page(auth: AuthService, error: str) -> RedirectResponse:
    url = f"{auth.settings.login_page_path}?{urlencode({'error': error})}"
    return RedirectResponse(url, status_code=302)


@router.get("/auth/oauth/{provider}")
async def oauth_redirect(
    request: Request,
    provider: str,
    auth: AuthService = Depends(get_auth_service),
) -> RedirectResponse:
    """Redirect the browser to the OAuth provider's authorization page.

    Validates the provider name against the enabled provider list before
    redirecting, so a crafted provider name cannot pick an arbitrary client.
    """
    enabled = {p["name"] for p in get_enabled_providers(auth.settings)}
    if provider not in enabled:
        return _login_page(auth, "oauth_failed")

    client = request.app.state.oauth.create_client(provider)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await client.authorize_redirect(request, redirect_uri)


@router.get("/auth/oauth/{provider}/callback", name="oauth_callback")
async def oauth_callback(
    request: Request,
    provider: str,
    auth: AuthService = Depends(get_auth_service),
    cookie: SessionCookie = Depends(get_session_cookie),
    client_ctx: ClientContext = Depends(client_context),
) -> RedirectResponse:
    """Handle the provider callback.

    Flow:
      1. Exchange the authorization code (authlib checks the state value).
      2. Extract a verified FederatedIdentity -- ValueError if unverified [H1].
      3. AuthService.login_federated(): link or create the local account,
         then the same second-factor / session flow as a password login.
      4. Redirect with the cookie set, or to the TOTP page with the challenge.
    """
    enabled = {p["name"] for p in get_enabled_providers(auth.settings)}
    if provider not in enabled:
        return _login_page(auth, "oauth_failed")

    client = request.app.state.oauth.create_client(provider)

    try:
        token = await client.authorize_access_token(request)
    except OAuthError:
        logger.exception("OAuth token exchange failed for provider %r", provider)
        return _login_page(auth, "oauth_failed")

    try:
        identity = await get_federated_identity(client, provider, token)
    except ValueError:
        logger.warning("OAuth login rejected: unverified or missing email from %r", provider)
        return _login_page(auth, "oauth_failed")

    try:
        result = auth.login_federated(identity, client_ctx)
    except AuthError as exc:
        logger.warning("OAuth login rejected for provider %r: %s", provider, exc.reason or exc.code)
        return _login_page(auth, exc.code)

    if result.authenticated:
        resp = RedirectResponse(auth.settings.post_login_path, status_code=302)
        cookie.set(resp, result.session)
    else:
        query = urlencode({"challenge": result.pending.id})
        resp = RedirectResponse(f"{auth.settings.second_factor_page_path}?{query}", status_code=302)
    return _no_store(resp)
