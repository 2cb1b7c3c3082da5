# SPDX-License-Identifier: AGPL-3.0-only OR LicenseRef-Moltr-Commercial
# Copyright (C) 2026 Walter Troska / moltrHQ <hello@moltr.tech>
# See LICENSE (AGPL-3.0) or LICENSE-COMMERCIAL for licensing terms.

"""Password hashing and verification with bcrypt."""

import bcrypt

MIN_PASSWORD_LENGTH = 12

# Compared against when the email is unknown so both paths cost one bcrypt check.
_DUMMY_HASH = bcrypt.hashpw(b"bookmark-bureau-dummy-password", bcrypt.gensalt()).decode("utf-8")


def hash_password(password: str, min_length: int = MIN_PASSWORD_LENGTH) -> str:
    """Hash a password with bcrypt."""
    if len(password) < min_length:
        raise ValueError(f"Password must be at least {min_length} characters")
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Verify a password against its bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def burn_password_check(plain: str) -> None:
    verify_password(plain, _DUMMY_HASH)
