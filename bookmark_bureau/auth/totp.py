# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""TOTP second factor (RFC 6238: 30 s step, 6 digits, HMAC-SHA1)."""

from __future__ import annotations

import binascii
import time
from typing import Callable, Optional

import pyotp

TOTP_WINDOW = 1


class TotpVerifier:
    """Checks codes against a Base32 secret, tolerating ``window`` steps of drift."""

    def __init__(
        self,
        window: int = TOTP_WINDOW,
        issuer: str = "bookmark-bureau",
        clock: Callable[[], float] = time.time,
    ) -> None:
        if window < 1:
            raise ValueError("TOTP window must be at least 1")
        self._window = window
        self._issuer = issuer
        self._clock = clock

    def verify(self, secret: str, code: str, at: Optional[float] = None) -> bool:
        code = (code or "").strip()
        if not code.isdigit() or len(code) != 6:
            return False
        for_time = int(at if at is not None else self._clock())
        try:
            return pyotp.TOTP(secret).verify(code, for_time=for_time, valid_window=self._window)
        except (binascii.Error, ValueError):
            return False

    def now(self, secret: str) -> str:
        """Current code for a secret (CLI output and tests)."""
        return pyotp.TOTP(secret).at(int(self._clock()))

    @staticmethod
    def generate_secret() -> str:
        return pyotp.random_base32()

    def provisioning_uri(self, secret: str, email: str) -> str:
        """otpauth:// URI for authenticator apps."""
        return pyotp.TOTP(secret).provisioning_uri(name=email, issuer_name=self._issuer)
