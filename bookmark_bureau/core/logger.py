# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Bookmark Bureau security logging.

Thin structured wrapper around the standard ``logging`` module used by the
authentication components. Plain messages carry ``key=value`` context,
security events are emitted as single JSON lines. Secrets are redacted
before anything reaches a handler.
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from datetime import datetime, timezone
from typing import Any

_SENSITIVE_PATTERNS = re.compile(
    r"(?:eyJ[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]{10,}\.[A-Za-z0-9_\-]*)"  # JWTs
    r"|(?:\$2[aby]\$\d{2}\$[./A-Za-z0-9]{53})"                            # bcrypt hashes
)

_SENSITIVE_KEYS = frozenset({
    "password", "passwd", "pwd", "secret", "token", "totp_code",
    "totp_secret", "password_hash", "authorization", "jwt_secret",
})

_SEVERITY_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}


def _redact_value(key: str, value: Any) -> Any:
    """Redact sensitive values in log context."""
    if isinstance(value, str):
        if key.lower() in _SENSITIVE_KEYS:
            return "[REDACTED]"
        if _SENSITIVE_PATTERNS.search(value):
            return _SENSITIVE_PATTERNS.sub("[REDACTED]", value)
    return value


def pseudonymize_ip(ip: str | None) -> str | None:
    """Null the last octet of an IPv4 address for log output."""
    if not ip:
        return ip
    parts = ip.split(".")
    if len(parts) == 4:
        parts[-1] = "0"
        return ".".join(parts)
    return ip


class BureauLogger:
    """Structured logger for authentication and rate-limit events."""

    def __init__(self, name: str = "auth") -> None:
        """Bind to the ``bureau.<name>`` logger.

        Handlers and levels are left to the application's logging setup,
        so records propagate like any other stdlib logger.
        """
        self._name = name
        self._logger = logging.getLogger(f"bureau.{name}")

    @property
    def name(self) -> str:
        return self._logger.name

    def info(self, message: str, **context: Any) -> None:
        self._log(logging.INFO, message, context)

    def warning(self, message: str, **context: Any) -> None:
        self._log(logging.WARNING, message, context)

    def error(self, message: str, **context: Any) -> None:
        self._log(logging.ERROR, message, context)

    def security_event(self, event_type: str, severity: str, details: dict[str, Any]) -> str:
        """Log a structured security event and return its event id.

        Args:
            event_type: e.g. 'login_failed', 'login_blocked', 'token_revoked'.
            severity: low, medium, high or critical.
            details: Event-specific fields. Sensitive keys are redacted.
        """
        safe_details = {k: _redact_value(k, v) for k, v in details.items()}
        event_id = str(uuid.uuid4())
        event = {
            "event_id": event_id,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "component": self._name,
            "event_type": event_type,
            "severity": severity.upper(),
            **safe_details,
        }
        level = _SEVERITY_LEVELS.get(severity.lower(), logging.WARNING)
        self._logger.log(level, json.dumps(event, ensure_ascii=False, default=str))
        return event_id

    def _log(self, level: int, message: str, context: dict[str, Any]) -> None:
        """Append structured context with redaction."""
        if context:
            safe_ctx = {k: _redact_value(k, v) for k, v in context.items()}
            ctx_str = " ".join(f"{k}={v!r}" for k, v in safe_ctx.items())
            self._logger.log(level, "%s | %s", message, ctx_str)
        else:
            self._logger.log(level, message)
