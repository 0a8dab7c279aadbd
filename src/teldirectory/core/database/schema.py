"""SQLite schema for administrator credentials and per-extension side data."""

import sqlite3
from pathlib import Path
from typing import Any

SCHEMA_VERSION = 1

_SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    username TEXT UNIQUE NOT NULL,
    hashedPassword TEXT NOT NULL,
    createdAt DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS extension_details (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    extension_number TEXT NOT NULL,
    locality_id TEXT NOT NULL,
    user_name TEXT,
    organization TEXT,
    ad_department TEXT,
    job_title TEXT,
    email TEXT,
    main_phone_number TEXT,
    source TEXT DEFAULT 'xml',
    last_synced DATETIME DEFAULT CURRENT_TIMESTAMP,
    UNIQUE(extension_number, locality_id, source)
);

CREATE INDEX IF NOT EXISTS idx_extension_details_number_locality
    ON extension_details (extension_number, locality_id);

CREATE TABLE IF NOT EXISTS metadata (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL
);
"""

_DETAIL_FIELDS = (
    "user_name",
    "organization",
    "ad_department",
    "job_title",
    "email",
    "main_phone_number",
)


def create_schema(conn: sqlite3.Connection) -> None:
    """Create all tables and indexes."""
    conn.executescript(_SCHEMA_SQL)
    conn.execute(
        "INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)",
        ("schema_version", str(SCHEMA_VERSION)),
    )
    conn.commit()


def get_schema_version(conn: sqlite3.Connection) -> int | None:
    """Return the current schema version, or None if metadata table doesn't exist."""
    try:
        row = conn.execute("SELECT value FROM metadata WHERE key = 'schema_version'").fetchone()
    except sqlite3.OperationalError:
        return None
    return int(row[0]) if row else None


def migrate_schema(conn: sqlite3.Connection) -> None:
    """Create or migrate the database schema to the latest version."""
    version = get_schema_version(conn)
    if version is None:
        create_schema(conn)


def open_database(db_path: Path | str) -> sqlite3.Connection:
    """Open (creating if needed) the database and bring its schema up to date."""
    if str(db_path) != ":memory:":
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db_path))
    migrate_schema(conn)
    return conn


def get_metadata(conn: sqlite3.Connection, key: str) -> str | None:
    row = conn.execute("SELECT value FROM metadata WHERE key = ?", (key,)).fetchone()
    return row[0] if row else None


def set_metadata(conn: sqlite3.Connection, key: str, value: str) -> None:
    conn.execute("INSERT OR REPLACE INTO metadata (key, value) VALUES (?, ?)", (key, value))
    conn.commit()


def upsert_extension_details(
    conn: sqlite3.Connection,
    *,
    extension_number: str,
    locality_id: str,
    source: str,
    **fields: str | None,
) -> None:
    """Insert or refresh the side data of one extension.

    Rows are keyed by (extension_number, locality_id, source); every call bumps
    last_synced. Does not commit.
    """
    unknown = set(fields) - set(_DETAIL_FIELDS)
    if unknown:
        msg = f"unknown extension detail fields: {sorted(unknown)!r}"
        raise ValueError(msg)
    values = [fields.get(name) for name in _DETAIL_FIELDS]
    columns = ", ".join(_DETAIL_FIELDS)
    placeholders = ", ".join("?" for _ in _DETAIL_FIELDS)
    updates = ", ".join(f"{name} = excluded.{name}" for name in _DETAIL_FIELDS)
    conn.execute(
        f"INSERT INTO extension_details (extension_number, locality_id, source, {columns}) "
        f"VALUES (?, ?, ?, {placeholders}) "
        "ON CONFLICT(extension_number, locality_id, source) DO UPDATE SET "
        f"{updates}, last_synced = CURRENT_TIMESTAMP",
        (extension_number, locality_id, source, *values),
    )


def get_extension_details(
    conn: sqlite3.Connection, extension_number: str
) -> list[dict[str, Any]]:
    cursor = conn.execute(
        "SELECT extension_number, locality_id, source, "
        f"{', '.join(_DETAIL_FIELDS)} FROM extension_details "
        "WHERE extension_number = ? ORDER BY locality_id, source",
        (extension_number,),
    )
    names = [d[0] for d in cursor.description]
    return [dict(zip(names, row, strict=True)) for row in cursor.fetchall()]


def get_password_hash(conn: sqlite3.Connection, username: str) -> str | None:
    """Look up the stored password hash for a user, None if the user does not exist."""
    row = conn.execute(
        "SELECT hashedPassword FROM users WHERE username = ?", (username,)
    ).fetchone()
    return row[0] if row else None


def create_user(conn: sqlite3.Connection, username: str, hashed_password: str) -> int:
    """Add a user with an already-hashed password. Returns the new row id.

    Raises:
        sqlite3.IntegrityError: The username is taken.
    """
    cursor = conn.execute(
        "INSERT INTO users (username, hashedPassword) VALUES (?, ?)",
        (username, hashed_password),
    )
    conn.commit()
    return int(cursor.lastrowid or 0)


def count_users(conn: sqlite3.Connection) -> int:
    return int(conn.execute("SELECT COUNT(*) FROM users").fetchone()[0])
