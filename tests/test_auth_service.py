"""Tests for the login state machine and token lifecycle."""

from __future__ import annotations

import jwt
import pyotp
import pytest

from bookmark_bureau.api.server import build_service
from bookmark_bureau.auth.errors import (
    BlockScope,
    InvalidCredentials,
    InvalidToken,
    RateLimitExceeded,
    TotpRequired,
)
from bookmark_bureau.auth.jwt_handler import ALGORITHM, TokenType
from bookmark_bureau.auth.password import hash_password
from bookmark_bureau.auth.user_store import JsonUserStore

from conftest import START, TEST_SECRET

PASSWORD = "correct-horse-battery"
TOTP_SECRET = "JBSWY3DPEHPK3PXP"
IP = "198.51.100.7"


@pytest.fixture
def users(config) -> JsonUserStore:
    config.data_dir.mkdir(parents=True, exist_ok=True)
    store = JsonUserStore(config.data_dir)
    store.create("alice@example.com", hash_password(PASSWORD))
    totp_user = store.create("tina@example.com", hash_password(PASSWORD))
    store.set_totp_secret(totp_user.user_id, TOTP_SECRET)
    return store


@pytest.fixture
def service(config, users, clock):
    return build_service(config, users=users, clock=clock)


def _attempts(service) -> int:
    return service.rate_limiter.store.attempt_count()


class TestLogin:
    def test_success_without_totp(self, service) -> None:
        response = service.login("alice@example.com", PASSWORD, ip=IP)
        assert response.token
        assert response.type == "Bearer"
        assert response.token_type == "session"
        assert response.expires_at == START + 4 * 60 * 60

    def test_email_is_case_insensitive(self, service) -> None:
        assert service.login("ALICE@example.com", PASSWORD, ip=IP).token

    def test_session_token_verifies(self, service) -> None:
        token = service.login("alice@example.com", PASSWORD, ip=IP).token
        claims = service.verify_request(token)
        assert claims.token_type is TokenType.SESSION
        assert claims.jti is None

    def test_wrong_password_records_one_failure(self, service) -> None:
        with pytest.raises(InvalidCredentials) as exc_info:
            service.login("alice@example.com", "wrong-password-123", ip=IP)
        assert exc_info.value.detail == "Invalid credentials"
        assert _attempts(service) == 1

    def test_unknown_user_same_error(self, service) -> None:
        with pytest.raises(InvalidCredentials) as exc_info:
            service.login("nobody@example.com", PASSWORD, ip=IP)
        assert exc_info.value.detail == "Invalid credentials"
        assert _attempts(service) == 1

    def test_totp_required_not_penalized(self, service) -> None:
        with pytest.raises(TotpRequired):
            service.login("tina@example.com", PASSWORD, ip=IP)
        with pytest.raises(TotpRequired):
            service.login("tina@example.com", PASSWORD, totp_code="  ", ip=IP)
        assert _attempts(service) == 0

    def test_totp_wrong_password_is_plain_failure(self, service) -> None:
        with pytest.raises(InvalidCredentials):
            service.login("tina@example.com", "wrong-password-123", ip=IP)
        assert _attempts(service) == 1

    def test_totp_invalid_code(self, service) -> None:
        totp = pyotp.TOTP(TOTP_SECRET)
        accepted = {totp.at(START + step * 30) for step in (-1, 0, 1)}
        wrong = next(c for c in ("000000", "111111", "222222", "333333") if c not in accepted)
        with pytest.raises(InvalidCredentials):
            service.login("tina@example.com", PASSWORD, totp_code=wrong, ip=IP)
        assert _attempts(service) == 1

    def test_totp_valid_code(self, service) -> None:
        code = pyotp.TOTP(TOTP_SECRET).at(START)
        response = service.login("tina@example.com", PASSWORD, totp_code=code, ip=IP)
        assert response.token

    def test_ip_block_scenario(self, service) -> None:
        for i in range(5):
            with pytest.raises(InvalidCredentials):
                service.login(f"user{i}@example.com", "wrong-password-123", ip="203.0.113.5")
        with pytest.raises(RateLimitExceeded) as exc_info:
            service.login("alice@example.com", PASSWORD, ip="203.0.113.5")
        assert exc_info.value.scope is BlockScope.IP

    def test_blocked_user_cannot_login_with_right_password(self, service) -> None:
        for i in range(5):
            with pytest.raises(InvalidCredentials):
                service.login("alice@example.com", "wrong-password-123", ip=f"192.0.2.{i}")
        with pytest.raises(RateLimitExceeded) as exc_info:
            service.login("alice@example.com", PASSWORD, ip="192.0.2.200")
        assert exc_info.value.scope is BlockScope.USERNAME
        # blocked attempts are rejected before anything is recorded
        assert _attempts(service) == 5

    def test_block_expires(self, service, clock) -> None:
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.login("alice@example.com", "wrong-password-123", ip=IP)
        clock.advance(600)
        assert service.login("alice@example.com", PASSWORD, ip="192.0.2.1").token

    def test_success_clears_username_failures(self, service) -> None:
        for i in range(4):
            with pytest.raises(InvalidCredentials):
                service.login("alice@example.com", "wrong-password-123", ip=f"192.0.2.{i}")
        service.login("alice@example.com", PASSWORD, ip="192.0.2.100")
        with pytest.raises(InvalidCredentials):
            service.login("alice@example.com", "wrong-password-123", ip="192.0.2.101")
        assert service.login("alice@example.com", PASSWORD, ip="192.0.2.102").token


class TestRememberMe:
    def test_remember_me_registers_jti(self, service) -> None:
        response = service.login("alice@example.com", PASSWORD, remember_me=True, ip=IP)
        assert response.token_type == "remember_me"
        assert response.expires_at == START + 30 * 24 * 60 * 60
        claims = service.verify_request(response.token)
        assert claims.jti

    def test_logout_revokes(self, service) -> None:
        token = service.login("alice@example.com", PASSWORD, remember_me=True, ip=IP).token
        service.logout(service.verify_request(token))
        with pytest.raises(InvalidToken, match="revoked"):
            service.verify_request(token)

    def test_refresh_keeps_token_valid(self, service, clock) -> None:
        token = service.login("alice@example.com", PASSWORD, remember_me=True, ip=IP).token
        claims = service.verify_request(token)
        clock.advance(3600)
        renewed = service.refresh(claims)
        new_claims = service.verify_request(renewed.token)
        assert new_claims.jti == claims.jti
        assert new_claims.expires_at == START + 3600 + 30 * 24 * 60 * 60
        # the old token shares the jti and stays usable until it expires
        assert service.verify_request(token).jti == claims.jti

    def test_cleanup_sweeps_old_remember_me(self, service, clock) -> None:
        token = service.login("alice@example.com", PASSWORD, remember_me=True, ip=IP).token
        cli = service.issue_cli_token("alice@example.com", PASSWORD).token
        clock.advance(30 * 24 * 60 * 60 + 1)
        assert service.cleanup_expired_rate_limit_data() == 1
        with pytest.raises(InvalidToken):
            service.verify_request(token)
        assert service.verify_request(cli).token_type is TokenType.CLI


class TestCliTokens:
    def test_issue_and_verify(self, service) -> None:
        response = service.issue_cli_token("alice@example.com", PASSWORD)
        assert response.expires_at is None
        claims = service.verify_request(f"Bearer {response.token}")
        assert claims.token_type is TokenType.CLI
        assert [r.jti for r in service.list_cli_tokens()] == [claims.jti]

    def test_wrong_password(self, service) -> None:
        with pytest.raises(InvalidCredentials):
            service.issue_cli_token("alice@example.com", "wrong-password-123")
        with pytest.raises(InvalidCredentials):
            service.issue_cli_token("nobody@example.com", PASSWORD)

    def test_revoke(self, service) -> None:
        token = service.issue_cli_token("alice@example.com", PASSWORD).token
        jti = service.verify_request(token).jti
        assert service.revoke_token(jti) is True
        assert service.revoke_token(jti) is False
        with pytest.raises(InvalidToken):
            service.verify_request(token)

    def test_refresh_unknown_user(self, service, config, clock) -> None:
        token = service.issue_cli_token("alice@example.com", PASSWORD).token
        claims = service.verify_request(token)
        empty = build_service(config, users=JsonUserStore(config.data_dir / "empty"), clock=clock)
        with pytest.raises(InvalidToken):
            empty.refresh(claims)


class TestVerifyRequest:
    def test_empty_token(self, service) -> None:
        with pytest.raises(InvalidToken):
            service.verify_request("Bearer ")

    def test_garbage(self, service) -> None:
        with pytest.raises(InvalidToken):
            service.verify_request("not-a-jwt")


class TestCleanup:
    def test_cleanup_counts_rate_limit_rows(self, service, clock) -> None:
        for _ in range(5):
            with pytest.raises(InvalidCredentials):
                service.login("alice@example.com", "wrong-password-123", ip=IP)
        clock.advance(601)
        assert service.cleanup_expired_rate_limit_data() == 7  # 5 attempts, 2 blocks
        assert service.cleanup_expired_rate_limit_data() == 0


class TestForgedJti:
    def test_session_token_with_jti_is_invalid(self, service, users) -> None:
        user_id = users.find_by_email("alice@example.com").user_id
        token = jwt.encode(
            {"iss": "bookmark-bureau", "aud": "bookmark-bureau-api", "sub": user_id,
             "type": "session", "iat": START, "exp": START + 60, "jti": "abc"},
            TEST_SECRET, algorithm=ALGORITHM,
        )
        with pytest.raises(InvalidToken):
            service.verify_request(token)


class TestRevokeUserTokens:
    def test_revokes_cli_and_remember_me(self, service, users) -> None:
        remember = service.login("alice@example.com", PASSWORD, remember_me=True, ip=IP).token
        cli = service.issue_cli_token("alice@example.com", PASSWORD).token
        other = service.issue_cli_token("tina@example.com", PASSWORD).token
        user_id = users.find_by_email("alice@example.com").user_id

        assert service.revoke_user_tokens(user_id) == 2
        for token in (remember, cli):
            with pytest.raises(InvalidToken):
                service.verify_request(token)
        assert service.verify_request(other).token_type is TokenType.CLI
        assert service.revoke_user_tokens(user_id) == 0
