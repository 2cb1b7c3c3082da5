"""Bookmark Bureau configuration loader.

Loads the YAML configuration file, applies ``BUREAU_*`` environment
overrides and provides typed access to the authentication and
rate-limit settings.
"""

from __future__ import annotations

import copy
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Mapping, Optional

import yaml

logger = logging.getLogger("bureau.config")

MIN_SECRET_BYTES = 32

DEFAULTS: dict[str, Any] = {
    "bureau": {
        "log_level": "INFO",
        "data_dir": "data",
        "request_limit": "120/minute",
    },
    "auth": {
        "jwt_secret": "",
        "application_name": "bookmark-bureau",
        "session_ttl": 4 * 60 * 60,            # 4 hours
        "remember_me_ttl": 30 * 24 * 60 * 60,  # 30 days
        "password_min_length": 12,
        "totp_window": 1,
    },
    "rate_limit": {
        "backend": "sqlite",
        "username_threshold": 10,
        "ip_threshold": 100,
        "window_minutes": 10,
        "block_minutes": None,
        "reset_on_success": True,
        "trusted_proxies": [],
    },
}


def _to_bool(raw: str) -> bool:
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _to_list(raw: str) -> list[str]:
    return [part.strip() for part in raw.split(",") if part.strip()]


# env var -> (dotted key, converter)
_ENV_OVERRIDES: dict[str, tuple[str, Callable[[str], Any]]] = {
    "BUREAU_LOG_LEVEL": ("bureau.log_level", str.upper),
    "BUREAU_DATA_DIR": ("bureau.data_dir", str),
    "BUREAU_REQUEST_LIMIT": ("bureau.request_limit", str),
    "BUREAU_JWT_SECRET": ("auth.jwt_secret", str),
    "BUREAU_APP_NAME": ("auth.application_name", str),
    "BUREAU_SESSION_TTL": ("auth.session_ttl", int),
    "BUREAU_REMEMBER_ME_TTL": ("auth.remember_me_ttl", int),
    "BUREAU_TOTP_WINDOW": ("auth.totp_window", int),
    "BUREAU_RATELIMIT_BACKEND": ("rate_limit.backend", str.lower),
    "BUREAU_RATELIMIT_USERNAME_THRESHOLD": ("rate_limit.username_threshold", int),
    "BUREAU_RATELIMIT_IP_THRESHOLD": ("rate_limit.ip_threshold", int),
    "BUREAU_RATELIMIT_WINDOW_MINUTES": ("rate_limit.window_minutes", int),
    "BUREAU_RATELIMIT_BLOCK_MINUTES": ("rate_limit.block_minutes", int),
    "BUREAU_RATELIMIT_RESET_ON_SUCCESS": ("rate_limit.reset_on_success", _to_bool),
    "BUREAU_TRUSTED_PROXY": ("rate_limit.trusted_proxies", _to_list),
}


class ConfigError(ValueError):
    """Raised when the configuration is incomplete or inconsistent."""


def _merge(base: dict[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _as_int(section: Mapping[str, Any], key: str) -> int:
    value = section.get(key)
    if isinstance(value, bool):
        raise ConfigError(f"Invalid integer for {key}: {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid integer for {key}: {value!r}") from exc


def _set_dotted(data: dict[str, Any], key: str, value: Any) -> None:
    parts = key.split(".")
    current = data
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


@dataclass(frozen=True)
class AuthSettings:
    """JWT, password and TOTP settings."""

    jwt_secret: str
    application_name: str = "bookmark-bureau"
    session_ttl: int = 4 * 60 * 60
    remember_me_ttl: int = 30 * 24 * 60 * 60
    password_min_length: int = 12
    totp_window: int = 1

    def __post_init__(self) -> None:
        if len(self.jwt_secret.encode("utf-8")) < MIN_SECRET_BYTES:
            raise ConfigError(
                f"JWT secret must be at least {MIN_SECRET_BYTES} bytes for HS256 "
                f"(got {len(self.jwt_secret.encode('utf-8'))})"
            )
        if not self.application_name:
            raise ConfigError("Application name cannot be empty")
        if self.session_ttl <= 0 or self.remember_me_ttl <= 0:
            raise ConfigError("Token TTLs must be positive")
        if self.totp_window < 1:
            raise ConfigError(f"TOTP window must be at least 1 (got {self.totp_window})")
        if self.password_min_length < 1:
            raise ConfigError("Password minimum length must be at least 1")


@dataclass(frozen=True)
class RateLimitSettings:
    """Thresholds and windows for failed-login blocking."""

    backend: str = "sqlite"
    username_threshold: int = 10
    ip_threshold: int = 100
    window_minutes: int = 10
    block_minutes: Optional[int] = None
    reset_on_success: bool = True
    trusted_proxies: tuple[str, ...] = field(default_factory=tuple)

    def __post_init__(self) -> None:
        if self.backend not in ("sqlite", "memory"):
            raise ConfigError(f"Invalid rate limit backend: {self.backend!r} (expected sqlite/memory)")
        if self.username_threshold < 1 or self.ip_threshold < 1:
            raise ConfigError("Rate limit thresholds must be at least 1")
        if self.window_minutes < 1:
            raise ConfigError("Rate limit window must be at least 1 minute")
        if self.block_minutes is not None and self.block_minutes < 1:
            raise ConfigError("Block duration must be at least 1 minute")

    @property
    def window_seconds(self) -> int:
        return self.window_minutes * 60

    @property
    def block_seconds(self) -> int:
        minutes = self.block_minutes if self.block_minutes is not None else self.window_minutes
        return minutes * 60


class BureauConfig:
    """Central configuration for the authentication service.

    Values come from three layers, later ones winning: built-in defaults,
    the YAML file, and ``BUREAU_*`` environment variables.
    """

    _REQUIRED_KEYS = {"bureau", "auth", "rate_limit"}

    def __init__(
        self,
        config_path: str | Path | None = "config/default.yaml",
        environ: Optional[Mapping[str, str]] = None,
        overrides: Optional[Mapping[str, Any]] = None,
    ) -> None:
        """Load configuration.

        Args:
            config_path: YAML file to load. Missing files fall back to defaults.
            environ: Environment mapping, defaults to ``os.environ``.
            overrides: Nested mapping applied after YAML and before the
                environment (used by tests and the CLI).
        """
        self._config_path = Path(config_path) if config_path else None
        self._environ = os.environ if environ is None else environ
        self._overrides = overrides or {}
        self._data: dict[str, Any] = {}
        self._load()

    def _load(self) -> None:
        data = copy.deepcopy(DEFAULTS)
        if self._config_path is not None:
            if self._config_path.exists():
                raw = self._config_path.read_text(encoding="utf-8")
                try:
                    loaded = yaml.safe_load(raw) or {}
                except yaml.YAMLError as exc:
                    raise ConfigError(f"Invalid YAML in {self._config_path}: {exc}") from exc
                if not isinstance(loaded, Mapping):
                    raise ConfigError(f"Config file {self._config_path} must contain a mapping")
                _merge(data, loaded)
            else:
                logger.warning("Config file not found: %s (using defaults)", self._config_path)
        _merge(data, self._overrides)
        for env_name, (key, convert) in _ENV_OVERRIDES.items():
            raw_value = self._environ.get(env_name)
            if raw_value is None or raw_value == "":
                continue
            try:
                _set_dotted(data, key, convert(raw_value))
            except ValueError as exc:
                raise ConfigError(f"Invalid value for {env_name}: {raw_value!r}") from exc
        self._data = data

    def get(self, key: str, default: Any = None) -> Any:
        """Retrieve a value by dotted key path (e.g. 'rate_limit.ip_threshold')."""
        current: Any = self._data
        for part in key.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default
        return current

    def validate(self) -> bool:
        """Validate completeness and build the typed settings once.

        Raises:
            ConfigError: If the configuration is invalid.
        """
        missing = self._REQUIRED_KEYS - set(self._data.keys())
        if missing:
            raise ConfigError(f"Missing required config sections: {', '.join(sorted(missing))}")
        log_level = self.get("bureau.log_level", "")
        if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ConfigError(f"Invalid log_level: {log_level!r}")
        self.auth_settings()
        self.rate_limit_settings()
        return True

    @property
    def log_level(self) -> str:
        return str(self.get("bureau.log_level", "INFO"))

    @property
    def data_dir(self) -> Path:
        return Path(self.get("bureau.data_dir", "data"))

    @property
    def request_limit(self) -> str:
        return str(self.get("bureau.request_limit", "120/minute"))

    def auth_settings(self) -> AuthSettings:
        section = self.get("auth", {})
        return AuthSettings(
            jwt_secret=str(section.get("jwt_secret") or ""),
            application_name=str(section.get("application_name", "")),
            session_ttl=_as_int(section, "session_ttl"),
            remember_me_ttl=_as_int(section, "remember_me_ttl"),
            password_min_length=_as_int(section, "password_min_length"),
            totp_window=_as_int(section, "totp_window"),
        )

    def rate_limit_settings(self) -> RateLimitSettings:
        section = self.get("rate_limit", {})
        block_minutes = section.get("block_minutes")
        return RateLimitSettings(
            backend=str(section.get("backend", "sqlite")),
            username_threshold=_as_int(section, "username_threshold"),
            ip_threshold=_as_int(section, "ip_threshold"),
            window_minutes=_as_int(section, "window_minutes"),
            block_minutes=_as_int(section, "block_minutes") if block_minutes is not None else None,
            reset_on_success=bool(section.get("reset_on_success", True)),
            trusted_proxies=tuple(section.get("trusted_proxies") or ()),
        )
