# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Pydantic models for the authentication API."""

from __future__ import annotations

from pydantic import BaseModel, Field, field_validator


class LoginRequest(BaseModel):
    """Login request body."""

    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., min_length=1, max_length=1024)
    totp_code: str | None = Field(default=None, max_length=16)
    remember_me: bool = False

    @field_validator("email")
    @classmethod
    def _email_shape(cls, value: str) -> str:
        if "@" not in value:
            raise ValueError("email must contain '@'")
        return value.strip()


class TokenResponse(BaseModel):
    """Response after successful login or token refresh."""

    token: str
    type: str = "Bearer"
    token_type: str
    expires_at: int | None = None


class AuthError(BaseModel):
    """Auth error response."""

    detail: str
    retry_after: int | None = None


class ClaimsResponse(BaseModel):
    """Verified claims of the presented token."""

    user_id: str
    token_type: str
    issued_at: int
    expires_at: int | None = None
    jti: str | None = None
