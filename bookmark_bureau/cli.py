# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Bookmark Bureau CLI: operator commands for users, tokens and rate limits.

Commands:
  bureau user-create EMAIL        Create a user (password prompted)
  bureau user-list                List users
  bureau user-delete EMAIL        Delete a user, revoke their tokens
  bureau user-change-password EMAIL
                                  Set a new password, revoke their tokens
  bureau totp enable EMAIL        Enroll TOTP, print secret + otpauth URI
  bureau totp disable EMAIL       Remove TOTP
  bureau cli-token generate EMAIL Issue a non-expiring CLI token
  bureau cli-token revoke JTI     Revoke a CLI or remember-me token
  bureau cli-token list           List outstanding CLI tokens
  bureau ratelimit-cleanup        Purge stale attempts, blocks and remember-me jtis
  bureau ratelimit-init-db        Create the SQLite rate limit tables
"""

from __future__ import annotations

import argparse
import getpass
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from bookmark_bureau.api.server import PROJECT_ROOT, RATELIMIT_DB, build_service
from bookmark_bureau.auth.errors import BureauError
from bookmark_bureau.auth.password import hash_password
from bookmark_bureau.auth.rate_limit_store import SqliteRateLimitStore
from bookmark_bureau.auth.service import AuthenticationService
from bookmark_bureau.auth.totp import TotpVerifier
from bookmark_bureau.auth.user_store import JsonUserStore
from bookmark_bureau.core.config import BureauConfig, ConfigError

# ─── Colors ────────────────────────────────────────────────────────────────

GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
CYAN = "\033[96m"
BOLD = "\033[1m"
RESET = "\033[0m"


def _ok(msg: str) -> None:
    print(f"{GREEN}[OK]{RESET} {msg}")


def _warn(msg: str) -> None:
    print(f"{YELLOW}[!]{RESET} {msg}")


def _err(msg: str) -> None:
    print(f"{RED}[ERR]{RESET} {msg}", file=sys.stderr)


def _header(title: str) -> None:
    width = 42
    border = "=" * width
    print(f"\n{CYAN}+{border}+")
    print(f"| {BOLD}{title.center(width - 2)}{RESET}{CYAN} |")
    print(f"+{border}+{RESET}\n")


# ─── Helpers ───────────────────────────────────────────────────────────────


def _load_config(args: argparse.Namespace) -> BureauConfig:
    load_dotenv(PROJECT_ROOT / ".env")
    return BureauConfig(args.config or PROJECT_ROOT / "config" / "default.yaml")


def _users(config: BureauConfig) -> JsonUserStore:
    config.data_dir.mkdir(parents=True, exist_ok=True)
    return JsonUserStore(config.data_dir)


def _service(config: BureauConfig, users: Optional[JsonUserStore] = None) -> AuthenticationService:
    return build_service(config, users=users if users is not None else _users(config))


def _ask_password(confirm: bool) -> str:
    password = getpass.getpass("Password: ")
    if confirm and getpass.getpass("Repeat password: ") != password:
        raise ValueError("Passwords do not match")
    return password


def _format_epoch(epoch: int) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S UTC")


# ─── Commands ──────────────────────────────────────────────────────────────


def cmd_user_create(args: argparse.Namespace) -> int:
    config = _load_config(args)
    users = _users(config)
    password = args.password if args.password is not None else _ask_password(confirm=True)
    min_length = int(config.get("auth.password_min_length", 12))
    user = users.create(args.email, hash_password(password, min_length=min_length))
    _ok(f"User created: {user.email} ({user.user_id})")
    return 0


def cmd_user_list(args: argparse.Namespace) -> int:
    users = _users(_load_config(args)).list_users()
    if not users:
        _warn("No users")
        return 0
    _header("Users")
    for user in users:
        totp = "TOTP" if user.totp_enabled else "-"
        print(f"  {user.user_id}  {user.email:<40} {totp}")
    print()
    return 0


def cmd_user_delete(args: argparse.Namespace) -> int:
    config = _load_config(args)
    users = _users(config)
    user = users.find_by_email(args.email)
    if user is None:
        _err(f"Unknown user: {args.email}")
        return 1
    if not args.yes:
        answer = input(f"Delete user '{user.email}'? [y/N] ")
        if answer.strip().lower() not in ("y", "yes"):
            _warn("Cancelled")
            return 0
    revoked = _service(config, users).revoke_user_tokens(user.user_id)
    users.delete(user.user_id)
    _ok(f"User deleted: {user.email} ({revoked} token(s) revoked)")
    return 0


def cmd_user_change_password(args: argparse.Namespace) -> int:
    config = _load_config(args)
    users = _users(config)
    user = users.find_by_email(args.email)
    if user is None:
        _err(f"Unknown user: {args.email}")
        return 1
    password = args.password if args.password is not None else _ask_password(confirm=True)
    min_length = int(config.get("auth.password_min_length", 12))
    users.set_password_hash(user.user_id, hash_password(password, min_length=min_length))
    revoked = _service(config, users).revoke_user_tokens(user.user_id)
    _ok(f"Password changed for {user.email} ({revoked} token(s) revoked)")
    return 0


def cmd_totp(args: argparse.Namespace) -> int:
    config = _load_config(args)
    users = _users(config)
    user = users.find_by_email(args.email)
    if user is None:
        _err(f"Unknown user: {args.email}")
        return 1

    if args.action == "disable":
        users.set_totp_secret(user.user_id, None)
        _ok(f"TOTP disabled for {user.email}")
        return 0

    if user.totp_enabled:
        _warn(f"TOTP already enabled for {user.email}; generating a new secret")
    verifier = TotpVerifier(issuer=str(config.get("auth.application_name", "bookmark-bureau")))
    secret = verifier.generate_secret()
    users.set_totp_secret(user.user_id, secret)
    _ok(f"TOTP enabled for {user.email}")
    print(f"  Secret: {BOLD}{secret}{RESET}")
    print(f"  URI:    {verifier.provisioning_uri(secret, user.email)}")
    return 0


def cmd_cli_token(args: argparse.Namespace) -> int:
    config = _load_config(args)
    users = _users(config)
    service = _service(config, users)

    if args.action == "generate":
        password = args.password if args.password is not None else _ask_password(confirm=False)
        response = service.issue_cli_token(args.email, password)
        _ok("CLI token generated (shown once, store it safely):")
        print(response.token)
        return 0

    if args.action == "revoke":
        if service.revoke_token(args.jti):
            _ok(f"Token revoked: {args.jti}")
            return 0
        _err(f"Unknown jti: {args.jti}")
        return 1

    user_id = None
    if args.email:
        user = users.find_by_email(args.email)
        if user is None:
            _err(f"Unknown user: {args.email}")
            return 1
        user_id = user.user_id
    records = service.list_cli_tokens(user_id)
    if not records:
        _warn("No CLI tokens")
        return 0
    _header("CLI tokens")
    for record in records:
        owner = users.get(record.user_id)
        email = owner.email if owner else record.user_id
        print(f"  {record.jti}  {email:<40} {_format_epoch(record.created_at)}")
    print()
    return 0


def cmd_ratelimit_cleanup(args: argparse.Namespace) -> int:
    removed = _service(_load_config(args)).cleanup_expired_rate_limit_data()
    _ok(f"Removed {removed} expired rate limit record(s)")
    return 0


def cmd_ratelimit_init_db(args: argparse.Namespace) -> int:
    config = _load_config(args)
    config.data_dir.mkdir(parents=True, exist_ok=True)
    store = SqliteRateLimitStore(config.data_dir / RATELIMIT_DB)
    _ok(f"Rate limit tables ready in {store.path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bureau",
        description="Bookmark Bureau: authentication maintenance",
    )
    parser.add_argument("--config", type=Path, default=None, help="YAML config file")
    sub = parser.add_subparsers(dest="command", required=True)

    # users
    p_user = sub.add_parser("user-create", help="Create a user")
    p_user.add_argument("email")
    p_user.add_argument("--password", default=None, help="Password (prompted otherwise)")
    sub.add_parser("user-list", help="List users")
    p_delete = sub.add_parser("user-delete", help="Delete a user and revoke their tokens")
    p_delete.add_argument("email")
    p_delete.add_argument("--yes", "-y", action="store_true", help="Skip the confirmation prompt")
    p_passwd = sub.add_parser("user-change-password", help="Set a new password and revoke tokens")
    p_passwd.add_argument("email")
    p_passwd.add_argument("--password", default=None, help="New password (prompted otherwise)")

    # totp
    p_totp = sub.add_parser("totp", help="Enable or disable TOTP for a user")
    p_totp.add_argument("action", choices=("enable", "disable"))
    p_totp.add_argument("email")

    # cli tokens
    p_token = sub.add_parser("cli-token", help="Manage non-expiring CLI tokens")
    token_sub = p_token.add_subparsers(dest="action", required=True)
    p_gen = token_sub.add_parser("generate", help="Issue a CLI token")
    p_gen.add_argument("email")
    p_gen.add_argument("--password", default=None, help="Password (prompted otherwise)")
    p_rev = token_sub.add_parser("revoke", help="Revoke a token by jti")
    p_rev.add_argument("jti")
    p_list = token_sub.add_parser("list", help="List CLI tokens")
    p_list.add_argument("--email", default=None)

    # rate limiting
    sub.add_parser("ratelimit-cleanup", help="Purge expired rate limit data")
    sub.add_parser("ratelimit-init-db", help="Create the SQLite rate limit tables")
    return parser


COMMANDS = {
    "user-create": cmd_user_create,
    "user-list": cmd_user_list,
    "user-delete": cmd_user_delete,
    "user-change-password": cmd_user_change_password,
    "totp": cmd_totp,
    "cli-token": cmd_cli_token,
    "ratelimit-cleanup": cmd_ratelimit_cleanup,
    "ratelimit-init-db": cmd_ratelimit_init_db,
}


def main(argv: Optional[list[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return COMMANDS[args.command](args)
    except (BureauError, ConfigError, ValueError) as exc:
        _err(str(exc))
        return 1


if __name__ == "__main__":
    sys.exit(main())
