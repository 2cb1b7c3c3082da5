# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Authentication API router: /api/v1/auth/.

Domain errors (rate limit, invalid credentials, TOTP required) propagate
to the application's BureauError handler; only bearer validation is
answered here so the 401 carries ``WWW-Authenticate: Bearer``.
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Iterable

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from .errors import InvalidToken
from .jwt_handler import TokenClaims
from .models import AuthError, ClaimsResponse, LoginRequest, TokenResponse
from .rate_limit import normalize_ip
from .service import AuthenticationService

logger = logging.getLogger("bureau.auth")

auth_router = APIRouter(prefix="/api/v1/auth", tags=["auth"])

_bearer_scheme = HTTPBearer(auto_error=False)

TrustedProxies = list[ipaddress.IPv4Network | ipaddress.IPv6Network]


def parse_trusted_proxies(entries: Iterable[str]) -> TrustedProxies:
    """Parse IPs/CIDRs such as "127.0.0.1" or "10.0.0.0/8". Invalid entries are skipped."""
    networks: TrustedProxies = []
    for entry in entries:
        entry = entry.strip()
        if not entry:
            continue
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            logger.warning("Invalid trusted proxy entry: %s", entry)
    return networks


def _is_trusted_proxy(ip: str, proxies: TrustedProxies) -> bool:
    """Return True if the given IP belongs to a configured trusted proxy."""
    if not proxies:
        return False
    try:
        addr = ipaddress.ip_address(normalize_ip(ip))
        return any(addr in net for net in proxies)
    except ValueError:
        return False


def get_client_ip(request: Request) -> str:
    """Extract the real client IP, trusting X-Forwarded-For behind a verified proxy.

    Without trusted proxies configured the header is ignored, otherwise
    attackers could rotate spoofed IPs past the per-IP login blocking.
    """
    direct_ip = request.client.host if request.client else "unknown"
    proxies: TrustedProxies = getattr(request.app.state, "trusted_proxies", [])
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded and _is_trusted_proxy(direct_ip, proxies):
        first = forwarded.split(",")[0].strip()
        if first:
            return normalize_ip(first)
    return normalize_ip(direct_ip)


def _service(request: Request) -> AuthenticationService:
    return request.app.state.auth_service


_ERROR_RESPONSES = {
    401: {"model": AuthError},
    429: {"model": AuthError},
}


@auth_router.post("/login", response_model=TokenResponse, responses=_ERROR_RESPONSES)
def login(req: LoginRequest, request: Request) -> TokenResponse:
    """Authenticate with email + password (+ TOTP code when enrolled)."""
    return _service(request).login(
        req.email,
        req.password,
        totp_code=req.totp_code,
        remember_me=req.remember_me,
        ip=get_client_ip(request),
    )


# === Dependency for protected endpoints ===


def get_current_claims(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> TokenClaims:
    """FastAPI dependency: validates the bearer token, returns its claims."""
    if not credentials:
        raise _auth_exception()
    try:
        return _service(request).verify_request(credentials.credentials)
    except InvalidToken as exc:
        logger.info("Rejected bearer token from %s: %s", get_client_ip(request), exc.detail)
        raise _auth_exception() from exc


def _auth_exception() -> HTTPException:
    return HTTPException(
        status_code=401,
        detail="Not authenticated",
        headers={"WWW-Authenticate": "Bearer"},
    )


@auth_router.post("/refresh", response_model=TokenResponse, responses=_ERROR_RESPONSES)
def refresh(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> TokenResponse:
    """Exchange a valid token for a fresh one of the same type."""
    try:
        return _service(request).refresh(claims)
    except InvalidToken as exc:
        raise _auth_exception() from exc


@auth_router.post("/logout")
def logout(request: Request, claims: TokenClaims = Depends(get_current_claims)) -> dict:
    """Logout: revoke the token's jti if it has one."""
    _service(request).logout(claims)
    return {"detail": "Logged out"}


@auth_router.get("/me", response_model=ClaimsResponse, responses=_ERROR_RESPONSES)
def me(claims: TokenClaims = Depends(get_current_claims)) -> ClaimsResponse:
    return ClaimsResponse(
        user_id=claims.user_id,
        token_type=claims.token_type.value,
        issued_at=claims.issued_at,
        expires_at=claims.expires_at,
        jti=claims.jti,
    )
