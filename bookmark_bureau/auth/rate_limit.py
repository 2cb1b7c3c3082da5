# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Failed-login rate limiting for the login endpoint.

Failures are counted per username and per IP inside a rolling window.
Reaching a threshold blocks that username or IP for ``block_seconds``.
The two scopes are independent: a username under attack is blocked
without locking out a shared IP, and one IP spraying many usernames is
blocked even though no single account crosses its threshold.
"""

from __future__ import annotations

import ipaddress
import time
from typing import Callable, Optional

from bookmark_bureau.core.config import RateLimitSettings
from bookmark_bureau.core.logger import BureauLogger, pseudonymize_ip

from .errors import RateLimitExceeded
from .rate_limit_store import RateLimitStore

USERNAME_THRESHOLD = 10
IP_THRESHOLD = 100
WINDOW_SECONDS = 10 * 60

security_log = BureauLogger("ratelimit")


def normalize_ip(ip: str) -> str:
    """Canonical form of an IP so format variations share one counter.

    ``::ffff:192.0.2.1`` becomes ``192.0.2.1`` and IPv6 addresses are
    compressed. Unparseable values are returned stripped but unchanged.
    """
    candidate = ip.strip()
    try:
        addr = ipaddress.ip_address(candidate)
    except ValueError:
        return candidate
    if isinstance(addr, ipaddress.IPv6Address) and addr.ipv4_mapped is not None:
        return str(addr.ipv4_mapped)
    return str(addr)


def normalize_username(username: Optional[str]) -> Optional[str]:
    if username is None:
        return None
    cleaned = username.strip().lower()
    return cleaned or None


class RateLimitService:
    """Decides whether a login attempt may proceed and tracks failures."""

    def __init__(
        self,
        store: RateLimitStore,
        username_threshold: int = USERNAME_THRESHOLD,
        ip_threshold: int = IP_THRESHOLD,
        window_seconds: int = WINDOW_SECONDS,
        block_seconds: Optional[int] = None,
        reset_on_success: bool = True,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._username_threshold = username_threshold
        self._ip_threshold = ip_threshold
        self._window_seconds = window_seconds
        self._block_seconds = block_seconds if block_seconds is not None else window_seconds
        self._reset_on_success = reset_on_success
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: RateLimitStore,
        settings: RateLimitSettings,
        clock: Callable[[], float] = time.time,
    ) -> "RateLimitService":
        return cls(
            store,
            username_threshold=settings.username_threshold,
            ip_threshold=settings.ip_threshold,
            window_seconds=settings.window_seconds,
            block_seconds=settings.block_seconds,
            reset_on_success=settings.reset_on_success,
            clock=clock,
        )

    @property
    def store(self) -> RateLimitStore:
        return self._store

    def _now(self) -> int:
        return int(self._clock())

    def check_allowed(self, username: Optional[str], ip: str) -> None:
        """Raise RateLimitExceeded if the username or the IP is blocked."""
        now = self._now()
        username = normalize_username(username)
        ip = normalize_ip(ip)
        blocks = self._store.active_blocks(username, ip, now)
        if not blocks:
            return

        blocked_username: Optional[str] = None
        blocked_ip: Optional[str] = None
        expires_at = 0
        for block in blocks:
            if username is not None and block.username == username:
                blocked_username = username
            if block.ip == ip:
                blocked_ip = ip
            expires_at = max(expires_at, block.expires_at)

        security_log.warning(
            "Login blocked",
            username=blocked_username,
            ip=pseudonymize_ip(blocked_ip),
            retry_after=expires_at - now,
        )
        raise RateLimitExceeded(
            blocked_username=blocked_username,
            blocked_ip=blocked_ip,
            expires_at=expires_at,
            now=now,
        )

    def record_failure(self, username: Optional[str], ip: str, at: Optional[float] = None) -> None:
        """Record a failed attempt and block any scope that reached its threshold."""
        now = int(at) if at is not None else self._now()
        username = normalize_username(username)
        ip = normalize_ip(ip)

        self._store.insert_attempt(username, ip, now)
        user_count, ip_count = self._store.count_attempts(
            username, ip, now - self._window_seconds
        )
        expires_at = now + self._block_seconds

        if username is not None and user_count >= self._username_threshold:
            self._store.upsert_block(username, None, now, expires_at)
            security_log.security_event("login_blocked", "medium", {
                "scope": "username",
                "username": username,
                "failures": user_count,
                "expires_at": expires_at,
            })

        if ip_count >= self._ip_threshold:
            self._store.upsert_block(None, ip, now, expires_at)
            security_log.security_event("login_blocked", "high", {
                "scope": "ip",
                "ip": pseudonymize_ip(ip),
                "failures": ip_count,
                "expires_at": expires_at,
            })

    def record_success(self, username: Optional[str], ip: str) -> None:
        """Forget the username's past failures if reset_on_success is enabled.

        IP-scoped counting is untouched: the attempts stay in the log
        without a username.
        """
        username = normalize_username(username)
        if self._reset_on_success and username is not None:
            self._store.clear_username(username)

    def cleanup(self) -> int:
        """Delete attempts outside the window and expired blocks. Returns rows removed."""
        now = self._now()
        removed = self._store.delete_expired(now - self._window_seconds, now)
        if removed:
            security_log.info("Rate limit cleanup", removed=removed)
        return removed
