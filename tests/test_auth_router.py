"""Integration tests: auth API endpoints via FastAPI TestClient."""

from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from starlette.requests import Request

from bookmark_bureau.api.server import build_service, create_app
from bookmark_bureau.auth.errors import RepositoryStorageError
from bookmark_bureau.auth.password import hash_password
from bookmark_bureau.auth.router import get_client_ip, parse_trusted_proxies
from bookmark_bureau.auth.user_store import JsonUserStore
from bookmark_bureau.core.config import BureauConfig

from conftest import TEST_SECRET

PASSWORD = "testpassword12"
TOTP_SECRET = "JBSWY3DPEHPK3PXP"
LOGIN = "/api/v1/auth/login"


@pytest.fixture
def users(config) -> JsonUserStore:
    config.data_dir.mkdir(parents=True, exist_ok=True)
    store = JsonUserStore(config.data_dir)
    store.create("admin@example.com", hash_password(PASSWORD))
    tina = store.create("tina@example.com", hash_password(PASSWORD))
    store.set_totp_secret(tina.user_id, TOTP_SECRET)
    return store


@pytest.fixture
def service(config, users, clock):
    return build_service(config, users=users, clock=clock)


@pytest.fixture
def client(config, service):
    return TestClient(create_app(config, service=service))


def _login(client, **body):
    payload = {"email": "admin@example.com", "password": PASSWORD}
    payload.update(body)
    return client.post(LOGIN, json=payload)


class TestLoginEndpoint:
    def test_login_success(self, client) -> None:
        resp = _login(client)
        assert resp.status_code == 200
        data = resp.json()
        assert data["token"]
        assert data["type"] == "Bearer"
        assert data["token_type"] == "session"
        assert isinstance(data["expires_at"], int)

    def test_login_wrong_password(self, client) -> None:
        resp = _login(client, password="wrongpassword1")
        assert resp.status_code == 401
        assert resp.json() == {"detail": "Invalid credentials"}

    def test_login_wrong_user(self, client) -> None:
        resp = _login(client, email="nobody@example.com")
        assert resp.status_code == 401
        assert resp.json() == {"detail": "Invalid credentials"}

    def test_totp_required(self, client) -> None:
        resp = _login(client, email="tina@example.com")
        assert resp.status_code == 401
        assert resp.json() == {"detail": "TOTP code required", "totp_required": True}

    def test_malformed_body(self, client) -> None:
        assert client.post(LOGIN, json={"email": "admin@example.com"}).status_code == 422
        assert _login(client, email="not-an-email").status_code == 422

    def test_rate_limited(self, client) -> None:
        for _ in range(5):
            assert _login(client, password="wrongpassword1").status_code == 401
        resp = _login(client)
        assert resp.status_code == 429
        data = resp.json()
        assert data["retry_after"] == 600
        assert "Try again in 600 seconds" in data["detail"]
        assert resp.headers["Retry-After"] == "600"

    def test_storage_failure_is_500(self, client, service, monkeypatch) -> None:
        def broken(*args, **kwargs):
            raise RepositoryStorageError("disk gone")

        monkeypatch.setattr(service, "login", broken)
        resp = _login(client)
        assert resp.status_code == 500
        assert resp.json() == {"detail": "Internal server error"}


class TestProtectedEndpoints:
    def test_me_requires_auth(self, client) -> None:
        resp = client.get("/api/v1/auth/me")
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_me_rejects_garbage(self, client) -> None:
        resp = client.get("/api/v1/auth/me", headers={"Authorization": "Bearer garbage"})
        assert resp.status_code == 401
        assert resp.headers["WWW-Authenticate"] == "Bearer"

    def test_me_with_token(self, client, users) -> None:
        token = _login(client).json()["token"]
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["user_id"] == users.find_by_email("admin@example.com").user_id
        assert data["token_type"] == "session"
        assert data["jti"] is None

    def test_refresh(self, client, clock) -> None:
        token = _login(client).json()["token"]
        clock.advance(60)
        resp = client.post("/api/v1/auth/refresh", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 200
        assert resp.json()["token"] != token

    def test_logout_revokes_remember_me(self, client) -> None:
        token = _login(client, remember_me=True).json()["token"]
        headers = {"Authorization": f"Bearer {token}"}
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 200
        resp = client.post("/api/v1/auth/logout", headers=headers)
        assert resp.status_code == 200
        assert resp.json() == {"detail": "Logged out"}
        assert client.get("/api/v1/auth/me", headers=headers).status_code == 401

    def test_expired_session(self, client, clock) -> None:
        token = _login(client).json()["token"]
        clock.advance(4 * 60 * 60 + 1)
        resp = client.get("/api/v1/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert resp.status_code == 401


class TestRequestLimit:
    def _config(self, tmp_path, **rate_limit) -> BureauConfig:
        return BureauConfig(
            config_path=None,
            environ={},
            overrides={
                "bureau": {"data_dir": str(tmp_path / "data"), "request_limit": "3/minute"},
                "auth": {"jwt_secret": TEST_SECRET},
                "rate_limit": rate_limit,
            },
        )

    def test_coarse_request_cap(self, tmp_path, users) -> None:
        config = self._config(tmp_path)
        client = TestClient(create_app(config, service=build_service(config, users=users)))
        for _ in range(3):
            assert client.get("/health").status_code == 200
        assert client.get("/health").status_code == 429

    def test_cap_is_per_client_behind_trusted_proxy(self, tmp_path, users) -> None:
        config = self._config(tmp_path, trusted_proxies=["10.0.0.0/8"])
        app = create_app(config, service=build_service(config, users=users))

        async def via_proxy(scope, receive, send):
            if scope["type"] == "http":
                scope = dict(scope, client=("10.0.0.1", 50000))
            await app(scope, receive, send)

        client = TestClient(via_proxy)
        for i in range(5):
            resp = client.get("/health", headers={"X-Forwarded-For": f"198.51.100.{i}"})
            assert resp.status_code == 200
        same = {"X-Forwarded-For": "203.0.113.9"}
        statuses = [client.get("/health", headers=same).status_code for _ in range(4)]
        assert statuses == [200, 200, 200, 429]


class TestClientIp:
    def _request(self, app, peer: str, forwarded: str | None = None) -> Request:
        headers = []
        if forwarded is not None:
            headers.append((b"x-forwarded-for", forwarded.encode()))
        return Request({
            "type": "http",
            "method": "POST",
            "path": LOGIN,
            "headers": headers,
            "client": (peer, 50000),
            "app": app,
        })

    @pytest.fixture
    def app(self, config, service):
        return create_app(config, service=service)

    def test_forwarded_ignored_without_trusted_proxy(self, app) -> None:
        request = self._request(app, "10.0.0.1", "203.0.113.5")
        assert get_client_ip(request) == "10.0.0.1"

    def test_forwarded_used_behind_trusted_proxy(self, app) -> None:
        app.state.trusted_proxies = parse_trusted_proxies(["10.0.0.0/8"])
        request = self._request(app, "10.0.0.1", "::ffff:203.0.113.5, 10.0.0.1")
        assert get_client_ip(request) == "203.0.113.5"

    def test_untrusted_peer_with_forwarded(self, app) -> None:
        app.state.trusted_proxies = parse_trusted_proxies(["10.0.0.0/8"])
        request = self._request(app, "192.0.2.50", "203.0.113.5")
        assert get_client_ip(request) == "192.0.2.50"

    def test_invalid_proxy_entries_skipped(self) -> None:
        networks = parse_trusted_proxies(["127.0.0.1", "garbage", " ", "10.0.0.0/8"])
        assert [str(n) for n in networks] == ["127.0.0.1/32", "10.0.0.0/8"]


class TestHealth:
    def test_health(self, client) -> None:
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "ok"
