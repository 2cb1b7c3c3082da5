# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Whitelist of valid token ids for long-lived tokens.

Storage: one line per token, ``jti,user_id,created_at`` (epoch seconds).
A token carrying a jti is only accepted while its line exists, so deleting
the line revokes the token without touching the signing key.

Appends are single ``O_APPEND`` writes. Removals rewrite the file into a
temp file in the same directory and ``os.replace`` it over the original,
so a concurrent reader sees either the old or the new file.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional

from .errors import RepositoryStorageError

logger = logging.getLogger("bureau.auth.jti")


@dataclass(frozen=True)
class JtiRecord:
    jti: str
    user_id: str
    created_at: int

    def to_line(self) -> str:
        return f"{self.jti},{self.user_id},{self.created_at}\n"

    @classmethod
    def from_line(cls, line: str) -> Optional["JtiRecord"]:
        parts = line.strip().split(",")
        if len(parts) != 3 or not parts[0]:
            return None
        try:
            return cls(jti=parts[0], user_id=parts[1], created_at=int(parts[2]))
        except ValueError:
            return None


class FileJtiRegistry:
    """Flat-file JTI whitelist."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()
        directory = self._path.parent
        if not directory.is_dir() or not os.access(directory, os.W_OK):
            raise RepositoryStorageError(
                f"Directory does not exist or is not writable: {directory}"
            )
        if self._path.exists() and not os.access(self._path, os.W_OK):
            raise RepositoryStorageError(f"JTI file is not writable: {self._path}")

    @property
    def path(self) -> Path:
        return self._path

    def _records(self) -> Iterator[JtiRecord]:
        try:
            with self._path.open("r", encoding="utf-8") as fh:
                lines = fh.readlines()
        except FileNotFoundError:
            return
        except OSError as exc:
            raise RepositoryStorageError(f"Failed to read JTI file {self._path}: {exc}") from exc
        for line in lines:
            record = JtiRecord.from_line(line)
            if record is not None:
                yield record

    def save_jti(self, jti: str, user_id: str, created_at: int) -> None:
        """Append one record. Duplicates are not checked; jtis are UUID4."""
        if "," in jti or "," in user_id or "\n" in jti or "\n" in user_id:
            raise ValueError("jti and user_id must not contain commas or newlines")
        data = JtiRecord(jti, user_id, int(created_at)).to_line().encode("utf-8")
        try:
            with self._lock:
                fd = os.open(self._path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
                try:
                    os.write(fd, data)
                finally:
                    os.close(fd)
        except OSError as exc:
            raise RepositoryStorageError(f"Failed to write JTI file {self._path}: {exc}") from exc

    def has_jti(self, jti: str) -> bool:
        return any(record.jti == jti for record in self._records())

    def list_jtis(self, user_id: Optional[str] = None) -> list[JtiRecord]:
        return [r for r in self._records() if user_id is None or r.user_id == user_id]

    def _remove_where(self, predicate: Callable[[JtiRecord], bool]) -> int:
        with self._lock:
            records = list(self._records())
            kept = [r for r in records if not predicate(r)]
            removed = len(records) - len(kept)
            if removed == 0:
                return 0
            try:
                fd, tmp_name = tempfile.mkstemp(
                    dir=self._path.parent, prefix=f".{self._path.name}.", suffix=".tmp"
                )
                try:
                    with os.fdopen(fd, "w", encoding="utf-8") as fh:
                        fh.writelines(r.to_line() for r in kept)
                    os.replace(tmp_name, self._path)
                except OSError:
                    if os.path.exists(tmp_name):
                        os.unlink(tmp_name)
                    raise
            except OSError as exc:
                raise RepositoryStorageError(
                    f"Failed to rewrite JTI file {self._path}: {exc}"
                ) from exc
            return removed

    def delete_jti(self, jti: str) -> None:
        """Remove a record. No-op if absent or the file does not exist yet."""
        if self._remove_where(lambda r: r.jti == jti):
            logger.info("Deleted jti %s from %s", jti, self._path.name)

    def delete_for_user(self, user_id: str) -> int:
        return self._remove_where(lambda r: r.user_id == user_id)

    def delete_created_before(self, cutoff: int) -> int:
        """Remove records created strictly before ``cutoff``."""
        return self._remove_where(lambda r: r.created_at < cutoff)
