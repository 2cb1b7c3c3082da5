# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Login orchestration and token lifecycle.

A login attempt runs strictly in this order:

    rate-limit check -> password check -> TOTP check -> issue

* A block stops the attempt before any password hashing.
* A wrong password, an unknown email or a wrong TOTP code records exactly
  one failure and raises InvalidCredentials with the same message.
* A correct password without a TOTP code on an enrolled account raises
  TotpRequired and records nothing, so the client can resubmit.
* Success clears the username's failures and issues a session or
  remember-me token; remember-me jtis are whitelisted.
"""

from __future__ import annotations

import time
from typing import Callable, NoReturn, Optional, Protocol

from bookmark_bureau.core.logger import BureauLogger, pseudonymize_ip

from .errors import InvalidCredentials, InvalidToken, TotpRequired
from .jti_registry import FileJtiRegistry, JtiRecord
from .jwt_handler import JwtCodec, TokenClaims, TokenType
from .models import TokenResponse
from .password import burn_password_check, verify_password
from .rate_limit import RateLimitService, normalize_ip, normalize_username
from .totp import TotpVerifier
from .user_store import User

security_log = BureauLogger("auth")


class UserLookup(Protocol):
    def find_by_email(self, email: str) -> Optional[User]: ...

    def get(self, user_id: str) -> Optional[User]: ...


class AuthenticationService:
    def __init__(
        self,
        users: UserLookup,
        rate_limiter: RateLimitService,
        codec: JwtCodec,
        totp: TotpVerifier,
        cli_registry: FileJtiRegistry,
        remember_me_registry: FileJtiRegistry,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._users = users
        self._rate_limiter = rate_limiter
        self._codec = codec
        self._totp = totp
        self._registries = {
            TokenType.CLI: cli_registry,
            TokenType.REMEMBER_ME: remember_me_registry,
        }
        self._clock = clock

    @property
    def codec(self) -> JwtCodec:
        return self._codec

    @property
    def rate_limiter(self) -> RateLimitService:
        return self._rate_limiter

    def _now(self) -> int:
        return int(self._clock())

    # ── Login ──────────────────────────────────────────────────────────────────

    def login(
        self,
        email: str,
        password: str,
        totp_code: Optional[str] = None,
        remember_me: bool = False,
        ip: str = "unknown",
    ) -> TokenResponse:
        """Authenticate and issue a token.

        Raises:
            RateLimitExceeded: The username or IP is blocked.
            InvalidCredentials: Unknown email, wrong password or wrong TOTP code.
            TotpRequired: Password correct, account enrolled, no code given.
        """
        username = normalize_username(email)
        ip = normalize_ip(ip)

        self._rate_limiter.check_allowed(username, ip)

        user = self._users.find_by_email(email)
        if user is None:
            burn_password_check(password)
            self._fail(username, ip, "unknown_user")
        if not verify_password(password, user.password_hash):
            self._fail(username, ip, "bad_password")

        if user.totp_enabled:
            if not totp_code or not totp_code.strip():
                security_log.info("TOTP code required", user_id=user.user_id)
                raise TotpRequired()
            if not self._totp.verify(user.totp_secret, totp_code):
                self._fail(username, ip, "bad_totp")

        self._rate_limiter.record_success(username, ip)
        token_type = TokenType.REMEMBER_ME if remember_me else TokenType.SESSION
        response = self._issue(user.user_id, token_type)
        security_log.info(
            "Login success",
            user_id=user.user_id,
            ip=pseudonymize_ip(ip),
            token_type=token_type.value,
        )
        return response

    def _fail(self, username: Optional[str], ip: str, reason: str) -> NoReturn:
        self._rate_limiter.record_failure(username, ip)
        security_log.security_event("login_failed", "low", {
            "username": username,
            "ip": pseudonymize_ip(ip),
            "reason": reason,
        })
        raise InvalidCredentials()

    def _issue(self, user_id: str, token_type: TokenType) -> TokenResponse:
        claims = self._codec.claims_for(user_id, token_type)
        token = self._codec.issue(claims)
        if claims.jti:
            self._registries[token_type].save_jti(claims.jti, user_id, claims.issued_at)
        return TokenResponse(
            token=token,
            token_type=token_type.value,
            expires_at=claims.expires_at,
        )

    # ── Requests ───────────────────────────────────────────────────────────────

    def verify_request(self, bearer_token: str) -> TokenClaims:
        """Verify a bearer token, including the whitelist for jti-bearing types."""
        token = bearer_token.strip()
        if token[:7].lower() == "bearer ":
            token = token[7:].strip()
        if not token:
            raise InvalidToken("Missing token")
        claims = self._codec.verify(token)
        if claims.jti:
            registry = self._registries.get(claims.token_type)
            if registry is None or not registry.has_jti(claims.jti):
                raise InvalidToken("Token revoked")
        return claims

    def logout(self, claims: TokenClaims) -> None:
        """Revoke the presented token if it is revocable. Session tokens simply expire."""
        registry = self._registries.get(claims.token_type)
        if claims.jti and registry is not None:
            registry.delete_jti(claims.jti)
            security_log.security_event("token_revoked", "low", {
                "user_id": claims.user_id,
                "token_type": claims.token_type.value,
                "jti": claims.jti,
                "reason": "logout",
            })

    def refresh(self, claims: TokenClaims) -> TokenResponse:
        """Re-issue a token of the same type for a still existing user."""
        if self._users.get(claims.user_id) is None:
            raise InvalidToken("Unknown user")
        renewed = self._codec.refresh(claims)
        if renewed.token_type is TokenType.REMEMBER_ME and renewed.jti:
            # restart the age used by the remember-me sweep
            registry = self._registries[TokenType.REMEMBER_ME]
            registry.delete_jti(renewed.jti)
            registry.save_jti(renewed.jti, renewed.user_id, renewed.issued_at)
        return TokenResponse(
            token=self._codec.issue(renewed),
            token_type=renewed.token_type.value,
            expires_at=renewed.expires_at,
        )

    # ── Operator tasks ─────────────────────────────────────────────────────────

    def issue_cli_token(self, email: str, password: str) -> TokenResponse:
        """Non-expiring CLI token after a password check (operator command)."""
        user = self._users.find_by_email(email)
        if user is None:
            burn_password_check(password)
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            raise InvalidCredentials()
        response = self._issue(user.user_id, TokenType.CLI)
        security_log.security_event("cli_token_issued", "low", {"user_id": user.user_id})
        return response

    def list_cli_tokens(self, user_id: Optional[str] = None) -> list[JtiRecord]:
        return self._registries[TokenType.CLI].list_jtis(user_id)

    def revoke_token(self, jti: str) -> bool:
        """Remove a jti from whichever whitelist holds it."""
        for token_type, registry in self._registries.items():
            if registry.has_jti(jti):
                registry.delete_jti(jti)
                security_log.security_event("token_revoked", "medium", {
                    "token_type": token_type.value,
                    "jti": jti,
                    "reason": "operator",
                })
                return True
        return False

    def revoke_user_tokens(self, user_id: str) -> int:
        """Drop every CLI and remember-me jti of a user. Returns the number removed."""
        removed = sum(registry.delete_for_user(user_id) for registry in self._registries.values())
        if removed:
            security_log.security_event("token_revoked", "medium", {
                "user_id": user_id,
                "count": removed,
                "reason": "user_change",
            })
        return removed

    def cleanup_expired_rate_limit_data(self) -> int:
        """Purge stale attempts, expired blocks and aged-out remember-me jtis."""
        removed = self._rate_limiter.cleanup()
        cutoff = self._now() - self._codec.remember_me_ttl
        removed += self._registries[TokenType.REMEMBER_ME].delete_created_before(cutoff)
        return removed
