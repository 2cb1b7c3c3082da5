# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Authentication error taxonomy.

Every domain error carries the HTTP status it maps to, so the API layer
can translate them with a single exception handler.
"""

from __future__ import annotations

import time
from enum import Enum
from typing import Any, Optional


class BureauError(Exception):
    """Base class for errors surfaced to API clients."""

    status_code: int = 400

    def __init__(self, detail: str) -> None:
        super().__init__(detail)
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.detail}


class BlockScope(str, Enum):
    """Which identity a rate-limit block applies to."""

    USERNAME = "username"
    IP = "ip"
    BOTH = "both"


class RateLimitExceeded(BureauError):
    """Too many failed logins for the username and/or IP (429)."""

    status_code = 429

    def __init__(
        self,
        blocked_username: Optional[str] = None,
        blocked_ip: Optional[str] = None,
        expires_at: Optional[int] = None,
        now: Optional[float] = None,
    ) -> None:
        self.blocked_username = blocked_username
        self.blocked_ip = blocked_ip
        self.expires_at = expires_at
        self._now = now
        message = "Rate limit exceeded. Too many failed login attempts."
        retry_after = self.retry_after_seconds()
        if retry_after is not None:
            message += f" Try again in {retry_after} seconds."
        super().__init__(message)

    @property
    def scope(self) -> BlockScope:
        if self.blocked_username is not None and self.blocked_ip is not None:
            return BlockScope.BOTH
        if self.blocked_ip is not None:
            return BlockScope.IP
        return BlockScope.USERNAME

    def retry_after_seconds(self, now: Optional[float] = None) -> Optional[int]:
        """Seconds until the block lifts, never negative."""
        if self.expires_at is None:
            return None
        current = now if now is not None else (self._now if self._now is not None else time.time())
        return max(0, int(self.expires_at - int(current)))

    def to_dict(self) -> dict[str, Any]:
        return {
            "detail": self.detail,
            "retry_after": self.retry_after_seconds(),
            "scope": self.scope.value,
        }


class InvalidCredentials(BureauError):
    """Unknown user, wrong password or wrong TOTP code (401).

    The message is deliberately identical for all causes.
    """

    status_code = 401

    def __init__(self, detail: str = "Invalid credentials") -> None:
        super().__init__(detail)


class TotpRequired(BureauError):
    """Password was correct but the account needs a TOTP code (401)."""

    status_code = 401

    def __init__(self, detail: str = "TOTP code required") -> None:
        super().__init__(detail)

    def to_dict(self) -> dict[str, Any]:
        return {"detail": self.detail, "totp_required": True}


class InvalidToken(BureauError):
    """JWT is malformed, badly signed, expired or revoked (401)."""

    status_code = 401


class RepositoryStorageError(BureauError):
    """A backing store is missing, unwritable or failed on I/O (500)."""

    status_code = 500
