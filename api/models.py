"""
API request and response models for Shared Thread auth endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.

No response model exposes password hashes, TOTP secrets or session ids; the
session id only ever travels inside the signed cookie.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from auth.credentials import MAX_PASSWORD_BYTES, password_too_long
from auth.models import User

# bcrypt only reads the first 72 bytes; cap well above that to bound hashing work.
_MAX_SECRET_LENGTH = 256


def _role_name(user: User) -> str:
    return user.role.value if user.role is not None else ""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class LoginStatus(str, Enum):
    authenticated = "authenticated"
    second_factor_required = "second_factor_required"


class RoleEnum(str, Enum):
    member = "member"
    admin = "admin"


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class LoginRequest(BaseModel):
    """Request body for POST /api/v1/auth/login. Identifier is a username or email."""

    identifier: str = Field(min_length=1, max_length=254)
    password: str = Field(min_length=1, max_length=_MAX_SECRET_LENGTH)


class TOTPRequest(BaseModel):
    """Request body for POST /api/v1/auth/totp."""

    challenge_id: str = Field(min_length=1, max_length=128)
    code: str = Field(min_length=1, max_length=16)


class PasswordChangeRequest(BaseModel):
    """Request body for POST /api/v1/auth/password."""

    current_password: str = Field(min_length=1, max_length=_MAX_SECRET_LENGTH)
    new_password: str = Field(min_length=12, max_length=_MAX_SECRET_LENGTH)

    @field_validator("new_password")
    @classmethod
    def fits_bcrypt(cls, value: str) -> str:
        if password_too_long(value):
            raise ValueError(f"must be at most {MAX_PASSWORD_BYTES} bytes in UTF-8")
        return value


class TOTPConfirmRequest(BaseModel):
    """Request body for POST /api/v1/auth/totp/confirm.

    The client echoes back the secret it was handed by /totp/enroll together
    with the first code its authenticator produced.
    """

    secret: str = Field(min_length=16, max_length=64)
    code: str = Field(min_length=1, max_length=16)

    @field_validator("secret")
    @classmethod
    def uppercase_secret(cls, value: str) -> str:
        return value.strip().upper()


class TOTPDisableRequest(BaseModel):
    """Request body for DELETE /api/v1/auth/totp. Re-authenticates with the password."""

    password: str = Field(min_length=1, max_length=_MAX_SECRET_LENGTH)


class UserPatch(BaseModel):
    """Request body for PATCH /api/v1/staff/users/{id}. Every field is optional."""

    role: Optional[RoleEnum] = None
    is_active: Optional[bool] = None
    is_approved: Optional[bool] = None
    email_verified: Optional[bool] = None


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class MeResponse(BaseModel):
    """Public identity of the session's user. Used by GET /auth/me and login."""

    model_config = ConfigDict(frozen=True)

    id: int
    username: str
    display_name: str
    role: str

    @classmethod
    def from_user(cls, user: User) -> "MeResponse":
        return cls(
            id=user.id,
            username=user.username,
            display_name=user.display_name or user.username,
            role=_role_name(user),
        )


class LoginResponse(BaseModel):
    """Response for POST /auth/login and POST /auth/totp.

    authenticated:          user is set; the session cookie is on the response.
    second_factor_required: challenge_id and expires_at are set; no cookie.
    """

    status: LoginStatus
    user: Optional[MeResponse] = None
    challenge_id: Optional[str] = None
    expires_at: Optional[datetime] = None


class TOTPEnrollResponse(BaseModel):
    """Response for POST /auth/totp/enroll. Shown once; nothing is stored yet."""

    secret: str
    provisioning_uri: str


class StatusResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    status: str = "ok"


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


class UserResponse(BaseModel):
    """Staff view of an account. Never carries secret material."""

    id: int
    username: str
    email: str
    display_name: str
    role: str
    is_active: bool
    is_approved: bool
    email_verified: bool
    second_factor_enabled: bool
    oauth_provider: Optional[str] = None
    created_at: Optional[str] = None
    last_active_at: Optional[str] = None

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            display_name=user.display_name or user.username,
            role=_role_name(user),
            is_active=user.is_active,
            is_approved=user.is_approved,
            email_verified=user.email_verified,
            second_factor_enabled=user.second_factor_enabled,
            oauth_provider=user.oauth_provider,
            created_at=user.created_at,
            last_active_at=user.last_active_at,
        )


class RevokeResponse(BaseModel):
    revoked: int


class SessionCountResponse(BaseModel):
    active: int


class SweepResponse(BaseModel):
    sessions: int
    pending: int
    totp_steps: int
    failures: int


class NetworkStatusResponse(BaseModel):
    """Response for GET /api/v1/network/status. Diagnostic only."""

    model_config = ConfigDict(frozen=True)

    client_ip: Optional[str]
    in_trusted_network: bool
    enabled: bool
    enforced: bool
    subnets: list[str]
    staff_access_allowed: bool
    message: str


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health.

    status is "healthy" when every component reports "ok", else "degraded".
    """

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]
