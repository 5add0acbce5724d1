"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for Shared Thread auth happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Enforces the SECRET_KEY policy and rejects
      malformed trusted-subnet definitions at startup rather than at the first
      staff request.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. The session
       cookie signature relies on key entropy.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure.

  [N1] TRUSTED_SUBNETS is parsed with ipaddress.ip_network(strict=False) at
       startup. A typo here would otherwise silently deny (or allow) every
       staff request.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import ipaddress
import logging
import secrets
from datetime import datetime, timezone
from functools import lru_cache

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sharedthread.config")

# Tailscale hands out addresses from the CGNAT block.
DEFAULT_TRUSTED_SUBNET = "100.64.0.0/10"

# Checked in order; the first header carrying a parseable IP wins.
DEFAULT_FORWARDED_HEADERS = [
    "x-forwarded-for",
    "x-real-ip",
    "cf-connecting-ip",
    "true-client-ip",
    "fastly-client-ip",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    environment: str = "production"
    secret_key: str = ""
    database_url: str = "sqlite:///sharedthread_auth.db"

    # ------------------------------------------------------------------
    # Sessions and cookies
    # ------------------------------------------------------------------

    session_cookie_name: str = "shared-thread-session"
    secure_cookies: bool = False
    # Host-only cookie unless a domain is configured explicitly.
    cookie_domain: str | None = None
    cookie_path: str = "/"
    # Absolute lifetime: 7 days from issuance, never extended by activity.
    session_lifetime_seconds: int = 7 * 24 * 60 * 60
    session_sweep_interval_seconds: int = 60 * 60

    # ------------------------------------------------------------------
    # Second factor
    # ------------------------------------------------------------------

    pending_auth_ttl_seconds: int = 5 * 60
    totp_issuer: str = "Shared Thread"
    totp_interval_seconds: int = 30
    totp_digits: int = 6
    # One step either side of the current step absorbs clock drift.
    totp_valid_window: int = 1

    # ------------------------------------------------------------------
    # Failed-attempt limits (per identifier / per user, shared store)
    # ------------------------------------------------------------------

    login_max_failures: int = 5
    login_failure_window_seconds: int = 15 * 60
    totp_max_failures: int = 3
    totp_failure_window_seconds: int = 5 * 60
    # Current-password checks behind an existing session (password change,
    # second-factor removal), counted per user.
    reauth_max_failures: int = 5
    reauth_failure_window_seconds: int = 15 * 60

    # Per-IP request throttling on the login endpoints (slowapi syntax).
    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Login eligibility policy
    # ------------------------------------------------------------------

    require_email_verified: bool = False
    require_approval: bool = False

    # ------------------------------------------------------------------
    # Network gate
    # ------------------------------------------------------------------

    network_gate_enabled: bool = True
    require_private_network: bool = True
    trusted_subnets: list[str] = [DEFAULT_TRUSTED_SUBNET]
    forwarded_ip_headers: list[str] = DEFAULT_FORWARDED_HEADERS

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    # Browser landing pages for the OAuth callback redirects.
    login_page_path: str = "/login"
    post_login_path: str = "/"
    second_factor_page_path: str = "/login/verify"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("trusted_subnets")
    @classmethod
    def validate_subnets(cls, value: list[str]) -> list[str]:
        """Reject unparseable CIDR strings at startup [N1]."""
        normalized = []
        for entry in value:
            try:
                normalized.append(str(ipaddress.ip_network(entry.strip(), strict=False)))
            except ValueError as exc:
                raise ValueError(f"Invalid trusted subnet {entry!r}: {exc}") from exc
        return normalized

    @field_validator("forwarded_ip_headers")
    @classmethod
    def lowercase_headers(cls, value: list[str]) -> list[str]:
        return [h.strip().lower() for h in value if h.strip()]

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Session cookies will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly and pass it to the service you are testing.
    """
    return Settings()


def utcnow() -> datetime:
    """Current time as an aware UTC datetime. The default clock for services."""
    return datetime.now(timezone.utc)


def now_iso() -> str:
    return utcnow().isoformat()
