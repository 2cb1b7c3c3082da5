"""Shared fixtures: a controllable clock and an isolated config."""

from __future__ import annotations

import pytest

from bookmark_bureau.core.config import BureauConfig

TEST_SECRET = "test-jwt-secret-for-pytest-only-0123456789"
START = 1_700_000_000


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path) -> BureauConfig:
    """Config with data in tmp_path, ignoring the process environment."""
    return BureauConfig(
        config_path=None,
        environ={},
        overrides={
            "bureau": {"data_dir": str(tmp_path / "data"), "request_limit": "1000/minute"},
            "auth": {"jwt_secret": TEST_SECRET},
            "rate_limit": {"username_threshold": 5, "ip_threshold": 5},
        },
    )
