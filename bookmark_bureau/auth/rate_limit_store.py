# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Storage for failed login attempts and login blocks.

Two backends share one interface:

* ``InMemoryRateLimitStore`` keeps rows in process memory (single worker).
* ``SqliteRateLimitStore`` keeps them in a SQLite file so several workers
  see the same attempts and blocks.

All timestamps are integer UTC epoch seconds. No operation spans more than
one statement; deletes are predicate based so cleanup can run alongside
normal traffic.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import closing, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional, Protocol

from .errors import RepositoryStorageError

logger = logging.getLogger("bureau.auth")


@dataclass(frozen=True)
class FailedLoginAttempt:
    timestamp: int
    ip: str
    username: Optional[str] = None


@dataclass
class LoginBlock:
    """A temporary block on a username, an IP, or both."""

    username: Optional[str]
    ip: Optional[str]
    blocked_at: int
    expires_at: int

    def __post_init__(self) -> None:
        if self.username is None and self.ip is None:
            raise ValueError("A login block needs a username or an IP")

    def is_active(self, now: int) -> bool:
        return now < self.expires_at


class RateLimitStore(Protocol):
    def insert_attempt(self, username: Optional[str], ip: str, at: int) -> None: ...

    def count_attempts(self, username: Optional[str], ip: str, since: int) -> tuple[int, int]:
        """Return (username_count, ip_count) for attempts with timestamp > since."""
        ...

    def active_blocks(self, username: Optional[str], ip: str, now: int) -> list[LoginBlock]: ...

    def upsert_block(
        self, username: Optional[str], ip: Optional[str], blocked_at: int, expires_at: int
    ) -> None:
        """Extend the active block of exactly this scope, or create one."""
        ...

    def clear_username(self, username: str) -> None:
        """Detach a username from its recorded attempts (IP rows stay)."""
        ...

    def delete_expired(self, attempts_before: int, now: int) -> int: ...

    def attempt_count(self) -> int: ...


class InMemoryRateLimitStore:
    """Process-local store guarded by a lock."""

    def __init__(self) -> None:
        self._attempts: list[FailedLoginAttempt] = []
        self._blocks: list[LoginBlock] = []
        self._lock = threading.Lock()

    def insert_attempt(self, username: Optional[str], ip: str, at: int) -> None:
        with self._lock:
            self._attempts.append(FailedLoginAttempt(timestamp=at, ip=ip, username=username))

    def count_attempts(self, username: Optional[str], ip: str, since: int) -> tuple[int, int]:
        with self._lock:
            recent = [a for a in self._attempts if a.timestamp > since]
        user_count = sum(1 for a in recent if username is not None and a.username == username)
        ip_count = sum(1 for a in recent if a.ip == ip)
        return user_count, ip_count

    def active_blocks(self, username: Optional[str], ip: str, now: int) -> list[LoginBlock]:
        with self._lock:
            return [
                LoginBlock(b.username, b.ip, b.blocked_at, b.expires_at)
                for b in self._blocks
                if b.is_active(now)
                and ((username is not None and b.username == username) or b.ip == ip)
            ]

    def upsert_block(
        self, username: Optional[str], ip: Optional[str], blocked_at: int, expires_at: int
    ) -> None:
        with self._lock:
            for block in self._blocks:
                if block.username == username and block.ip == ip and block.is_active(blocked_at):
                    block.expires_at = max(block.expires_at, expires_at)
                    return
            self._blocks.append(LoginBlock(username, ip, blocked_at, expires_at))

    def clear_username(self, username: str) -> None:
        with self._lock:
            self._attempts = [
                FailedLoginAttempt(a.timestamp, a.ip, None) if a.username == username else a
                for a in self._attempts
            ]

    def delete_expired(self, attempts_before: int, now: int) -> int:
        with self._lock:
            kept_attempts = [a for a in self._attempts if a.timestamp >= attempts_before]
            kept_blocks = [b for b in self._blocks if b.expires_at >= now]
            removed = (len(self._attempts) - len(kept_attempts)) + (len(self._blocks) - len(kept_blocks))
            self._attempts = kept_attempts
            self._blocks = kept_blocks
        return removed

    def attempt_count(self) -> int:
        with self._lock:
            return len(self._attempts)


_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS failed_login_attempts (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        timestamp INTEGER NOT NULL,
        ip TEXT NOT NULL,
        username TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_failed_attempts_timestamp ON failed_login_attempts(timestamp)",
    "CREATE INDEX IF NOT EXISTS idx_failed_attempts_username ON failed_login_attempts(username)",
    "CREATE INDEX IF NOT EXISTS idx_failed_attempts_ip ON failed_login_attempts(ip)",
    """
    CREATE TABLE IF NOT EXISTS login_blocks (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        username TEXT,
        ip TEXT,
        blocked_at INTEGER NOT NULL,
        expires_at INTEGER NOT NULL,
        CHECK (username IS NOT NULL OR ip IS NOT NULL)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_blocks_expires ON login_blocks(expires_at)",
)


class SqliteRateLimitStore:
    """SQLite-backed store shared by all workers on one host."""

    def __init__(self, db_path: str | Path, busy_timeout: float = 5.0) -> None:
        self._path = Path(db_path)
        self._busy_timeout = busy_timeout
        directory = self._path.parent
        if not directory.is_dir() or not os.access(directory, os.W_OK):
            raise RepositoryStorageError(
                f"Directory does not exist or is not writable: {directory}"
            )
        if self._path.exists() and not os.access(self._path, os.W_OK):
            raise RepositoryStorageError(f"Rate limit database is not writable: {self._path}")
        self.create_tables()

    @property
    def path(self) -> Path:
        return self._path

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        try:
            with closing(
                sqlite3.connect(self._path, timeout=self._busy_timeout, isolation_level=None)
            ) as conn:
                yield conn
        except sqlite3.Error as exc:
            logger.error("Rate limit store failure on %s: %s", self._path, exc)
            raise RepositoryStorageError(f"Rate limit storage failed: {exc}") from exc

    def create_tables(self) -> None:
        """Create tables and indexes if missing. Safe to call repeatedly."""
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            for statement in _SCHEMA:
                conn.execute(statement)

    def insert_attempt(self, username: Optional[str], ip: str, at: int) -> None:
        with self._connect() as conn:
            conn.execute(
                "INSERT INTO failed_login_attempts (timestamp, ip, username) VALUES (?, ?, ?)",
                (at, ip, username),
            )

    def count_attempts(self, username: Optional[str], ip: str, since: int) -> tuple[int, int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN username = ? THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN ip = ? THEN 1 ELSE 0 END), 0)
                FROM failed_login_attempts
                WHERE timestamp > ?
                """,
                (username, ip, since),
            ).fetchone()
        return int(row[0]), int(row[1])

    def active_blocks(self, username: Optional[str], ip: str, now: int) -> list[LoginBlock]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT username, ip, blocked_at, expires_at
                FROM login_blocks
                WHERE (username = ? OR ip = ?) AND expires_at > ?
                ORDER BY expires_at DESC
                """,
                (username, ip, now),
            ).fetchall()
        return [LoginBlock(*row) for row in rows]

    def upsert_block(
        self, username: Optional[str], ip: Optional[str], blocked_at: int, expires_at: int
    ) -> None:
        with self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE login_blocks SET expires_at = MAX(expires_at, ?)
                WHERE username IS ? AND ip IS ? AND expires_at > ?
                """,
                (expires_at, username, ip, blocked_at),
            )
            if cursor.rowcount == 0:
                conn.execute(
                    "INSERT INTO login_blocks (username, ip, blocked_at, expires_at) VALUES (?, ?, ?, ?)",
                    (username, ip, blocked_at, expires_at),
                )

    def clear_username(self, username: str) -> None:
        with self._connect() as conn:
            conn.execute(
                "UPDATE failed_login_attempts SET username = NULL WHERE username = ?",
                (username,),
            )

    def delete_expired(self, attempts_before: int, now: int) -> int:
        with self._connect() as conn:
            attempts = conn.execute(
                "DELETE FROM failed_login_attempts WHERE timestamp < ?", (attempts_before,)
            ).rowcount
            blocks = conn.execute(
                "DELETE FROM login_blocks WHERE expires_at < ?", (now,)
            ).rowcount
        return attempts + blocks

    def attempt_count(self) -> int:
        with self._connect() as conn:
            return int(conn.execute("SELECT COUNT(*) FROM failed_login_attempts").fetchone()[0])
