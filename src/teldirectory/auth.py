"""Authorization gates and credential lookup.

Password hashing is not done here: callers pass a verify function (for example
bcrypt.checkpw) that compares a plain password against the stored hash.
"""

import sqlite3
from collections.abc import Callable

from loguru import logger

from teldirectory.core.database.schema import get_password_hash

PasswordVerifier = Callable[[str, str], bool]


class StaticGate:
    """Gate with a fixed answer, for local tools and tests."""

    def __init__(self, authorized: bool = True) -> None:
        self.authorized = authorized

    def is_authorized(self) -> bool:
        return self.authorized


class CredentialGate:
    """Gate that opens once login() succeeds against the users table."""

    def __init__(self, conn: sqlite3.Connection, verify: PasswordVerifier) -> None:
        self._conn = conn
        self._verify = verify
        self.username: str | None = None

    def login(self, username: str, password: str) -> bool:
        if verify_credentials(self._conn, username, password, self._verify):
            self.username = username
            return True
        self.username = None
        return False

    def logout(self) -> None:
        self.username = None

    def is_authorized(self) -> bool:
        return self.username is not None


def verify_credentials(
    conn: sqlite3.Connection, username: str, password: str, verify: PasswordVerifier
) -> bool:
    """True if the user exists and verify(password, stored_hash) accepts."""
    if not username or not password:
        return False
    stored = get_password_hash(conn, username)
    if stored is None:
        logger.info("Login attempt for unknown user {!r}", username)
        return False
    if not verify(password, stored):
        logger.info("Wrong password for user {!r}", username)
        return False
    return True
