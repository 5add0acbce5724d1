"""
api/routes/v1/staff.py -- Staff (administrator) REST endpoints.

Routes:
  GET   /api/v1/staff/users                          -- list all accounts
  PATCH /api/v1/staff/users/{id}                     -- role / active / approved / verified
  GET   /api/v1/staff/users/{id}/sessions            -- count of live sessions for an account
  POST  /api/v1/staff/users/{id}/revoke-sessions     -- sign an account out everywhere
  POST  /api/v1/staff/sweep                          -- purge expired auth rows now

Every route depends on require_staff: admin role AND a trusted-network
origin. Either failing yields the same 403 "Access denied." and the handler
body never runs.

Security:
  [M4] PATCH blocks self-deactivation, self-demotion, and removing the last
       active admin (no recovery path without DB access).
  Deactivating an account revokes all of its sessions in the same request.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException

from api.models import RevokeResponse, SessionCountResponse, SweepResponse, UserPatch, UserResponse
from auth.dependencies import get_auth_service, require_staff
from auth.models import Role, User
from auth.service import AuthService

logger = logging.getLogger("sharedthread.api.staff")

router = APIRouter()


def _get_target(auth: AuthService, user_id: int) -> User:
    target = auth.store.get_by_id(user_id)
    if target is None:
        raise HTTPException(
            status_code=404,
            detail={"code": "not_found", "message": "User not found."},
        )
    return target


@router.get("/staff/users", response_model=list[UserResponse])
def list_users(
    staff: User = Depends(require_staff),
    auth: AuthService = Depends(get_auth_service),
) -> list[UserResponse]:
    return [UserResponse.from_user(u) for u in auth.store.list_users()]


@router.patch("/staff/users/{user_id}", response_model=UserResponse)
def update_user(
    user_id: int,
    body: UserPatch,
    staff: User = Depends(require_staff),
    auth: AuthService = Depends(get_auth_service),
) -> UserResponse:
    """Update an account's role or status flags.

    [M4] Prevents:
      - Self-deactivation and self-demotion (admin locking themselves out).
      - Deactivating or demoting the last active admin.
    """
    target = _get_target(auth, user_id)
    removes_admin = auth.roles.is_admin(target) and (
        body.is_active is False or (body.role is not None and body.role.value != Role.ADMIN.value)
    )

    if target.id == staff.id and removes_admin:
        raise HTTPException(
            status_code=400,
            detail={"code": "self_lockout", "message": "You cannot deactivate or demote your own account."},
        )
    if removes_admin and target.is_active and auth.store.count_active_admins() <= 1:
        raise HTTPException(
            status_code=400,
            detail={"code": "last_admin", "message": "Cannot remove the last active admin account."},
        )

    updates = body.model_dump(exclude_none=True)
    if "role" in updates:
        updates["role"] = body.role.value
    if not updates:
        raise HTTPException(
            status_code=400,
            detail={"code": "no_changes", "message": "No fields to update."},
        )

    auth.store.update_user(user_id, **updates)
    logger.info("Staff user_id=%s updated user_id=%s fields=%s", staff.id, user_id, sorted(updates))

    if body.is_active is False:
        revoked = auth.sessions.revoke_all(user_id)
        logger.info("Deactivated user_id=%s; %d session(s) revoked", user_id, revoked)

    return UserResponse.from_user(_get_target(auth, user_id))


@router.get("/staff/users/{user_id}/sessions", response_model=SessionCountResponse)
def count_sessions(
    user_id: int,
    staff: User = Depends(require_staff),
    auth: AuthService = Depends(get_auth_service),
) -> SessionCountResponse:
    """Number of unexpired sessions the account currently holds."""
    _get_target(auth, user_id)
    return SessionCountResponse(active=len(auth.sessions.active_sessions(user_id)))


@router.post("/staff/users/{user_id}/revoke-sessions", response_model=RevokeResponse)
def revoke_sessions(
    user_id: int,
    staff: User = Depends(require_staff),
    auth: AuthService = Depends(get_auth_service),
) -> RevokeResponse:
    _get_target(auth, user_id)
    revoked = auth.sessions.revoke_all(user_id)
    logger.info("Staff user_id=%s revoked %d session(s) of user_id=%s", staff.id, revoked, user_id)
    return RevokeResponse(revoked=revoked)


@router.post("/staff/sweep", response_model=SweepResponse)
def sweep(
    staff: User = Depends(require_staff),
    auth: AuthService = Depends(get_auth_service),
) -> SweepResponse:
    return SweepResponse(**auth.sweep())
