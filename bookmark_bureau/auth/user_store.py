# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Bookmark Bureau user store.

Storage: data/users.json (JSON file). Only bcrypt hashes are stored; the
TOTP secret is kept as Base32 text because the server needs it to compute
codes.

The file is written by both the API server and the operator CLI, so every
lookup re-reads it when the file on disk has changed.
"""

from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
import uuid
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import RepositoryStorageError

logger = logging.getLogger("bureau.auth.users")

_EMAIL_RE = re.compile(r"^[^@\s,]+@[^@\s,]+\.[^@\s,]+$")


def normalize_email(email: str) -> str:
    """Lower-case and validate an email address. Raises ValueError."""
    cleaned = email.strip().lower()
    if not _EMAIL_RE.match(cleaned):
        raise ValueError(f"Invalid email address: {email!r}")
    return cleaned


@dataclass
class User:
    user_id: str
    email: str
    password_hash: str
    totp_secret: Optional[str] = None
    created_at: str = ""

    @property
    def totp_enabled(self) -> bool:
        return bool(self.totp_secret)

    def to_public_dict(self) -> dict:
        """Safe dict for listings, never includes hash or secret."""
        return {
            "user_id": self.user_id,
            "email": self.email,
            "totp_enabled": self.totp_enabled,
            "created_at": self.created_at,
        }


class JsonUserStore:
    """Persistent user store backed by a JSON file."""

    def __init__(self, data_dir: Path):
        self._path = Path(data_dir) / "users.json"
        self._users: dict[str, User] = {}  # user_id -> User
        self._signature: Optional[tuple[int, int, int]] = None
        self._lock = threading.Lock()
        with self._lock:
            self._load()
        logger.info("[UserStore] Ready, %d users loaded", len(self._users))

    def _stat_signature(self) -> Optional[tuple[int, int, int]]:
        # every save is a new inode (os.replace), mtime and size catch in-place edits
        try:
            st = self._path.stat()
            return (st.st_ino, st.st_mtime_ns, st.st_size)
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise RepositoryStorageError(f"Failed to stat {self._path}: {exc}") from exc

    def _load(self) -> None:
        signature = self._stat_signature()
        users: dict[str, User] = {}
        if signature is not None:
            try:
                raw = json.loads(self._path.read_text(encoding="utf-8"))
                for entry in raw.get("users", []):
                    user = User(**entry)
                    users[user.user_id] = user
            except FileNotFoundError:
                signature = None
            except (OSError, ValueError, TypeError, AttributeError) as exc:
                raise RepositoryStorageError(f"Failed to load {self._path}: {exc}") from exc
        self._users = users
        self._signature = signature

    def _refresh(self) -> None:
        """Re-read the file if another process changed it. Caller holds the lock."""
        if self._stat_signature() != self._signature:
            self._load()
            logger.info("[UserStore] Reloaded %s, %d users", self._path.name, len(self._users))

    def _save(self) -> None:
        data = {"users": [asdict(u) for u in self._users.values()]}
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".users.", suffix=".tmp")
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(data, fh, indent=2)
            os.replace(tmp_name, self._path)
        except OSError as exc:
            raise RepositoryStorageError(f"Failed to save {self._path}: {exc}") from exc
        self._signature = self._stat_signature()

    def find_by_email(self, email: str) -> Optional[User]:
        try:
            wanted = normalize_email(email)
        except ValueError:
            return None
        with self._lock:
            self._refresh()
            for user in self._users.values():
                if user.email == wanted:
                    return user
        return None

    def get(self, user_id: str) -> Optional[User]:
        with self._lock:
            self._refresh()
            return self._users.get(user_id)

    def create(self, email: str, password_hash: str) -> User:
        """Add a user. Raises ValueError for a malformed or duplicate email."""
        normalized = normalize_email(email)
        with self._lock:
            self._refresh()
            if any(u.email == normalized for u in self._users.values()):
                raise ValueError(f"User already exists: {normalized}")
            user = User(
                user_id=str(uuid.uuid4()),
                email=normalized,
                password_hash=password_hash,
                created_at=datetime.now(timezone.utc).isoformat(),
            )
            self._users[user.user_id] = user
            self._save()
        logger.info("[UserStore] Created user %s", user.user_id)
        return user

    def set_totp_secret(self, user_id: str, secret: Optional[str]) -> bool:
        """Enroll (secret) or remove (None) TOTP. Returns True if the user exists."""
        with self._lock:
            self._refresh()
            user = self._users.get(user_id)
            if user is None:
                return False
            user.totp_secret = secret
            self._save()
        logger.info("[UserStore] TOTP %s for %s", "enabled" if secret else "disabled", user_id)
        return True

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._lock:
            self._refresh()
            user = self._users.get(user_id)
            if user is None:
                return False
            user.password_hash = password_hash
            self._save()
        logger.info("[UserStore] Password changed for %s", user_id)
        return True

    def delete(self, user_id: str) -> bool:
        with self._lock:
            self._refresh()
            if self._users.pop(user_id, None) is None:
                return False
            self._save()
        logger.info("[UserStore] Deleted user %s", user_id)
        return True

    def list_users(self) -> list[User]:
        with self._lock:
            self._refresh()
            return list(self._users.values())

    @property
    def count(self) -> int:
        return len(self.list_users())
