"""
api/routes/v1/network.py -- Private-network diagnostics.

GET /api/v1/network/status is public: it reports only what the caller
already knows (their own resolved IP) plus the gate configuration, and helps
staff debug "why am I getting Access denied?" before connecting the VPN.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request

from api.models import NetworkStatusResponse
from auth.dependencies import client_ip, get_auth_service
from auth.service import AuthService

router = APIRouter()


@router.get("/network/status", response_model=NetworkStatusResponse)
def network_status(request: Request, auth: AuthService = Depends(get_auth_service)) -> NetworkStatusResponse:
    ip = client_ip(request)
    status = auth.network.status(ip)
    # Derived from status so a diagnostic request never logs as staff access.
    allowed = not status.enabled or not status.enforced or status.in_trusted_network
    return NetworkStatusResponse(
        client_ip=status.client_ip,
        in_trusted_network=status.in_trusted_network,
        enabled=status.enabled,
        enforced=status.enforced,
        subnets=list(status.subnets),
        staff_access_allowed=allowed,
        message=(
            "Connected via the private network." if status.in_trusted_network
            else "Connect to the private network (Tailscale) to reach staff pages."
        ),
    )
