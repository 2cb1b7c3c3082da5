# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""JWT token creation and verification."""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Optional

import jwt

from bookmark_bureau.core.config import MIN_SECRET_BYTES, AuthSettings, ConfigError

from .errors import InvalidToken

ALGORITHM = "HS256"
SESSION_TTL = 4 * 60 * 60             # 4 hours
REMEMBER_ME_TTL = 30 * 24 * 60 * 60   # 30 days


class TokenType(str, Enum):
    CLI = "cli"
    SESSION = "session"
    REMEMBER_ME = "remember_me"

    @property
    def has_jti(self) -> bool:
        return self in (TokenType.CLI, TokenType.REMEMBER_ME)

    @property
    def expires(self) -> bool:
        return self is not TokenType.CLI


@dataclass(frozen=True)
class TokenClaims:
    """Verified content of a token. Timestamps are UTC epoch seconds."""

    user_id: str
    token_type: TokenType
    issued_at: int
    expires_at: Optional[int] = None
    jti: Optional[str] = None

    def is_expired(self, now: int) -> bool:
        return self.expires_at is not None and now > self.expires_at


class JwtCodec:
    """Encodes TokenClaims into HS256 JWTs and back."""

    def __init__(
        self,
        secret: str,
        application_name: str = "bookmark-bureau",
        session_ttl: int = SESSION_TTL,
        remember_me_ttl: int = REMEMBER_ME_TTL,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if len(secret.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ConfigError(f"JWT secret must be at least {MIN_SECRET_BYTES} bytes")
        if not application_name:
            raise ConfigError("Application name cannot be empty")
        self._secret = secret
        self._issuer = application_name
        self._audience = f"{application_name}-api"
        self._session_ttl = session_ttl
        self._remember_me_ttl = remember_me_ttl
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: AuthSettings, clock: Callable[[], float] = time.time
    ) -> "JwtCodec":
        return cls(
            settings.jwt_secret,
            application_name=settings.application_name,
            session_ttl=settings.session_ttl,
            remember_me_ttl=settings.remember_me_ttl,
            clock=clock,
        )

    @property
    def remember_me_ttl(self) -> int:
        return self._remember_me_ttl

    def _now(self) -> int:
        return int(self._clock())

    def _ttl_for(self, token_type: TokenType) -> Optional[int]:
        if token_type is TokenType.SESSION:
            return self._session_ttl
        if token_type is TokenType.REMEMBER_ME:
            return self._remember_me_ttl
        return None

    def claims_for(self, user_id: str, token_type: TokenType) -> TokenClaims:
        """Fresh claims for a new token of the given type, stamped with the current second."""
        now = self._now()
        ttl = self._ttl_for(token_type)
        return TokenClaims(
            user_id=user_id,
            token_type=token_type,
            issued_at=now,
            expires_at=now + ttl if ttl is not None else None,
            jti=str(uuid.uuid4()) if token_type.has_jti else None,
        )

    def issue(self, claims: TokenClaims) -> str:
        """Sign claims into a JWT string."""
        if claims.token_type.has_jti and not claims.jti:
            raise ValueError(f"{claims.token_type.value} tokens require a jti")
        if claims.jti and not claims.token_type.has_jti:
            raise ValueError(f"{claims.token_type.value} tokens must not carry a jti")
        payload: dict[str, Any] = {
            "iss": self._issuer,
            "aud": self._audience,
            "sub": claims.user_id,
            "type": claims.token_type.value,
            "iat": claims.issued_at,
            "nbf": claims.issued_at,
        }
        if claims.expires_at is not None:
            payload["exp"] = claims.expires_at
        if claims.jti:
            payload["jti"] = claims.jti
        return jwt.encode(payload, self._secret, algorithm=ALGORITHM)

    def verify(self, token: str) -> TokenClaims:
        """Verify signature, issuer, audience and expiry. Raises InvalidToken.

        Expiry is checked here rather than by PyJWT: a token whose ``exp``
        equals the current second is still valid.
        """
        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[ALGORITHM],
                audience=self._audience,
                issuer=self._issuer,
                options={
                    "verify_exp": False,
                    "verify_iat": False,
                    "verify_nbf": False,
                    "require": ["sub", "type", "iat"],
                },
            )
        except jwt.InvalidTokenError as exc:
            raise InvalidToken(f"Invalid token: {exc}") from exc

        try:
            token_type = TokenType(payload["type"])
        except ValueError as exc:
            raise InvalidToken(f"Unknown token type: {payload['type']!r}") from exc

        jti = payload.get("jti")
        if token_type.has_jti and not jti:
            raise InvalidToken(f"{token_type.value} token without jti")
        if jti and not token_type.has_jti:
            raise InvalidToken(f"{token_type.value} tokens must not carry a jti")

        expires_at = payload.get("exp")
        if token_type.expires and expires_at is None:
            raise InvalidToken(f"{token_type.value} token without expiry")

        try:
            claims = TokenClaims(
                user_id=str(payload["sub"]),
                token_type=token_type,
                issued_at=int(payload["iat"]),
                expires_at=int(expires_at) if expires_at is not None else None,
                jti=str(jti) if jti else None,
            )
        except (TypeError, ValueError) as exc:
            raise InvalidToken("Malformed token claims") from exc

        now = self._now()
        nbf = payload.get("nbf")
        if isinstance(nbf, (int, float)) and now < nbf:
            raise InvalidToken("Token not yet valid")
        if claims.is_expired(now):
            raise InvalidToken("Token expired")
        return claims

    def refresh(self, claims: TokenClaims) -> TokenClaims:
        """Claims for a replacement token of the same type and user.

        The jti is kept so the whitelisted record continues to identify the
        token; expiring types get a new expiry.
        """
        now = self._now()
        ttl = self._ttl_for(claims.token_type)
        return replace(
            claims,
            issued_at=now,
            expires_at=now + ttl if ttl is not None else None,
        )
