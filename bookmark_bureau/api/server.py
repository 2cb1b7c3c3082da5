# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Bookmark Bureau Auth API Server.

FastAPI application exposing login, token refresh/logout and claim
inspection. Build it with ``create_app()``; the ASGI entry point for
uvicorn is ``bookmark_bureau.api.server:create_app`` with ``--factory``.
"""

from __future__ import annotations

import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded as RequestLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from bookmark_bureau.auth.errors import BureauError, RateLimitExceeded, RepositoryStorageError
from bookmark_bureau.auth.jti_registry import FileJtiRegistry
from bookmark_bureau.auth.jwt_handler import JwtCodec
from bookmark_bureau.auth.rate_limit import RateLimitService
from bookmark_bureau.auth.rate_limit_store import (
    InMemoryRateLimitStore,
    RateLimitStore,
    SqliteRateLimitStore,
)
from bookmark_bureau.auth.router import auth_router, get_client_ip, parse_trusted_proxies
from bookmark_bureau.auth.service import AuthenticationService, UserLookup
from bookmark_bureau.auth.totp import TotpVerifier
from bookmark_bureau.auth.user_store import JsonUserStore
from bookmark_bureau.core.config import BureauConfig, RateLimitSettings

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

RATELIMIT_DB = "ratelimit.sqlite"
CLI_JTI_FILE = "cli-jti.csv"
REMEMBER_ME_JTI_FILE = "remember-me-jti.csv"

logger = logging.getLogger("bureau.api")


def load_config(config_path: Optional[Path] = None) -> BureauConfig:
    """Load .env and the YAML config from the project root, then validate."""
    load_dotenv(PROJECT_ROOT / ".env")
    config = BureauConfig(config_path or PROJECT_ROOT / "config" / "default.yaml")
    config.validate()
    return config


def build_rate_limit_store(settings: RateLimitSettings, data_dir: Path) -> RateLimitStore:
    if settings.backend == "memory":
        logger.warning("Using in-memory rate limit store (single worker only)")
        return InMemoryRateLimitStore()
    return SqliteRateLimitStore(data_dir / RATELIMIT_DB)


def build_service(
    config: BureauConfig,
    users: Optional[UserLookup] = None,
    clock: Callable[[], float] = time.time,
) -> AuthenticationService:
    """Wire the authentication service from configuration."""
    auth_settings = config.auth_settings()
    rl_settings = config.rate_limit_settings()
    data_dir = config.data_dir
    data_dir.mkdir(parents=True, exist_ok=True)

    store = build_rate_limit_store(rl_settings, data_dir)
    return AuthenticationService(
        users=users if users is not None else JsonUserStore(data_dir),
        rate_limiter=RateLimitService.from_settings(store, rl_settings, clock=clock),
        codec=JwtCodec.from_settings(auth_settings, clock=clock),
        totp=TotpVerifier(
            window=auth_settings.totp_window,
            issuer=auth_settings.application_name,
            clock=clock,
        ),
        cli_registry=FileJtiRegistry(data_dir / CLI_JTI_FILE),
        remember_me_registry=FileJtiRegistry(data_dir / REMEMBER_ME_JTI_FILE),
        clock=clock,
    )


def create_app(
    config: Optional[BureauConfig] = None,
    service: Optional[AuthenticationService] = None,
) -> FastAPI:
    """Application factory."""
    if config is None:
        config = load_config()

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if service is None:
        service = build_service(config)

    # --------------- Rate Limiting ---------------

    # per client IP, resolved through trusted proxies
    limiter = Limiter(key_func=get_client_ip, default_limits=[config.request_limit])

    app = FastAPI(
        title="Bookmark Bureau Auth API",
        description="Login, token and rate-limit service for Bookmark Bureau",
        version="0.1.0",
    )
    app.state.limiter = limiter
    app.state.auth_service = service
    app.state.trusted_proxies = parse_trusted_proxies(config.rate_limit_settings().trusted_proxies)
    app.add_middleware(SlowAPIMiddleware)

    app.include_router(auth_router)

    @app.exception_handler(RequestLimitExceeded)
    def request_limit_handler(request: Request, exc: RequestLimitExceeded):
        logger.warning(
            "REQUEST LIMIT from %s on %s",
            get_client_ip(request),
            request.url.path,
        )
        return JSONResponse(
            status_code=429,
            content={"detail": "Rate limit exceeded. Try again later.", "retry_after": None},
        )

    @app.exception_handler(RepositoryStorageError)
    async def storage_error_handler(request: Request, exc: RepositoryStorageError):
        logger.error("Storage failure on %s: %s", request.url.path, exc.detail)
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    @app.exception_handler(BureauError)
    async def bureau_error_handler(request: Request, exc: BureauError):
        headers = {}
        if isinstance(exc, RateLimitExceeded):
            retry_after = exc.retry_after_seconds()
            if retry_after is not None:
                headers["Retry-After"] = str(retry_after)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    logger.info("Bookmark Bureau auth API ready (rate limit backend: %s)",
                config.rate_limit_settings().backend)
    return app
