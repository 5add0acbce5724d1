"""
auth/oauth.py -- Authlib OAuth/OIDC federation capability.

The provider protocol is authlib's business. What this module hands to the
core is a FederatedIdentity: (provider, external_id, verified email). The
core's AuthService.login_federated() does the lookup-or-create and then runs
the same second-factor / session flow as a password login.

Only providers with both client ID and secret configured get registered.

Security notes:
  [H1] Email verification is mandatory. get_federated_identity() raises
       ValueError if the provider does not confirm the email is verified. An
       unverified email could belong to an attacker who added a victim's
       address without confirming it.

  OAuth state (CSRF protection) is handled by authlib via Starlette
  SessionMiddleware, registered in api/main.py.

Supported providers:
  github -- Authorization code flow; static endpoints.
  google -- Authorization code flow; OIDC discovery.
  oidc   -- Generic OIDC discovery (Okta, Azure AD, Keycloak, Authentik, etc.)

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from authlib.integrations.starlette_client import OAuth

from auth.models import FederatedIdentity
from core.config import Settings

logger = logging.getLogger("sharedthread.auth.oauth")


def build_oauth_registry(cfg: Settings) -> OAuth:
    """Return an authlib registry with every configured provider registered."""
    oauth = OAuth()

    if cfg.github_client_id and cfg.github_client_secret:
        oauth.register(
            name="github",
            client_id=cfg.github_client_id,
            client_secret=cfg.github_client_secret,
            access_token_url="https://github.com/login/oauth/access_token",  # noqa: S106 -- URL, not a password
            authorize_url="https://github.com/login/oauth/authorize",
            api_base_url="https://api.github.com/",
            client_kwargs={"scope": "read:user user:email"},
        )
        logger.info("GitHub OAuth provider registered")

    if cfg.google_client_id and cfg.google_client_secret:
        oauth.register(
            name="google",
            client_id=cfg.google_client_id,
            client_secret=cfg.google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        oauth.register(
            name="oidc",
            client_id=cfg.oidc_client_id,
            client_secret=cfg.oidc_client_secret,
            server_metadata_url=cfg.oidc_discovery_url,
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Generic OIDC provider registered (display name: %s)", cfg.oidc_display_name)

    return oauth


def get_enabled_providers(cfg: Settings) -> list[dict]:
    """Return {"name", "label"} for every configured provider."""
    providers: list[dict] = []
    if cfg.github_client_id and cfg.github_client_secret:
        providers.append({"name": "github", "label": "GitHub"})
    if cfg.google_client_id and cfg.google_client_secret:
        providers.append({"name": "google", "label": "Google"})
    if cfg.oidc_client_id and cfg.oidc_client_secret and cfg.oidc_discovery_url:
        providers.append({"name": "oidc", "label": cfg.oidc_display_name})
    return providers


# ---------------------------------------------------------------------------
# Identity extraction -- provider-specific normalization [H1]
# ---------------------------------------------------------------------------


async def get_federated_identity(client, provider: str, token: dict) -> FederatedIdentity:
    """Turn a provider token response into a verified FederatedIdentity.

    Raises:
        ValueError: If a verified email cannot be confirmed, or the provider
            is unknown.
    """
    if provider == "github":
        return await _github_identity(client, token)
    elif provider in ("google", "oidc"):
        return _oidc_identity(token, provider)
    else:
        raise ValueError(f"Unknown OAuth provider: {provider!r}")


async def _github_identity(client, token: dict) -> FederatedIdentity:
    """GitHub keeps email out of the token: fetch /user, then /user/emails.

    [H1] Only the email where both primary=true AND verified=true is accepted.
    """
    resp = await client.get("user", token=token)
    resp.raise_for_status()
    profile = resp.json()

    emails_resp = await client.get("user/emails", token=token)
    emails_resp.raise_for_status()

    email: str | None = None
    for entry in emails_resp.json():
        if entry.get("primary") and entry.get("verified"):
            email = entry["email"]
            break

    if not email:
        raise ValueError("GitHub OAuth: no primary verified email found.")

    return FederatedIdentity(
        provider="github",
        external_id=str(profile["id"]),
        email=email,
        display_name=profile.get("name") or profile.get("login") or "",
    )


def _oidc_identity(token: dict, provider: str) -> FederatedIdentity:
    """Read email / email_verified / sub from the id_token claims.

    [H1] A missing email_verified claim counts as unverified.
    """
    userinfo = token.get("userinfo")
    if not userinfo:
        raise ValueError(f"{provider} OAuth: no userinfo in token response")

    if not userinfo.get("email_verified", False):
        raise ValueError(f"{provider} OAuth: email is not verified.")

    email = userinfo.get("email")
    subject_id = userinfo.get("sub")
    if not email or not subject_id:
        raise ValueError(f"{provider} OAuth: missing email or sub claim in userinfo")

    return FederatedIdentity(
        provider=provider,
        external_id=str(subject_id),
        email=email,
        display_name=userinfo.get("name") or "",
    )
