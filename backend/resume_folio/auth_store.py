from __future__ import annotations

import hashlib
import secrets
import sqlite3
from datetime import datetime, timedelta, timezone
from typing import Any

from .db import connect

CREATE_USERS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    email TEXT NOT NULL UNIQUE,
    password_hash TEXT NOT NULL,
    password_salt TEXT NOT NULL,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""

CREATE_AUTH_SESSIONS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS auth_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id INTEGER NOT NULL,
    token_hash TEXT NOT NULL UNIQUE,
    is_revoked INTEGER NOT NULL DEFAULT 0,
    expires_at TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    FOREIGN KEY(user_id) REFERENCES users(id) ON DELETE CASCADE
);
"""

CREATE_INDEX_SQLS = [
    """
    CREATE INDEX IF NOT EXISTS idx_auth_sessions_user
    ON auth_sessions (user_id, created_at DESC, id DESC);
    """,
]

VERIFY_REASON_NOT_FOUND = "NOT_FOUND"
VERIFY_REASON_ACCOUNT_INACTIVE = "ACCOUNT_INACTIVE"
VERIFY_REASON_INVALID_PASSWORD = "INVALID_PASSWORD"

MIN_PASSWORD_LENGTH = 6
PBKDF2_ITERATIONS = 120_000


class UserExistsError(Exception):
    pass


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_USERS_TABLE_SQL)
    conn.execute(CREATE_AUTH_SESSIONS_TABLE_SQL)
    for sql in CREATE_INDEX_SQLS:
        conn.execute(sql)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _format_utc(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat()


def _parse_utc(value: str) -> datetime | None:
    raw = (value or "").strip()
    if not raw:
        return None
    try:
        if raw.endswith("Z"):
            return datetime.fromisoformat(raw.replace("Z", "+00:00"))
        return datetime.fromisoformat(raw)
    except ValueError:
        return None


def _hash_password(*, password: str, salt: str) -> str:
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt.encode("utf-8"),
        PBKDF2_ITERATIONS,
    )
    return digest.hex()


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def normalize_email(email: str) -> str:
    return email.strip().lower()


def _format_user(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": int(row["id"]),
        "name": str(row["name"]),
        "email": str(row["email"]),
    }


def register_user(*, name: str, email: str, password: str) -> dict[str, Any]:
    safe_name = name.strip()
    safe_email = normalize_email(email)
    safe_password = password.strip()
    if not safe_name:
        raise ValueError("name is required")
    if not safe_email or "@" not in safe_email:
        raise ValueError("a valid email is required")
    if len(safe_password) < MIN_PASSWORD_LENGTH:
        raise ValueError("password too short")

    salt = secrets.token_hex(16)
    password_hash = _hash_password(password=safe_password, salt=salt)

    with connect() as conn:
        _ensure_schema(conn)
        try:
            cursor = conn.execute(
                """
                INSERT INTO users (name, email, password_hash, password_salt, is_active)
                VALUES (?, ?, ?, ?, 1)
                """,
                (safe_name, safe_email, password_hash, salt),
            )
        except sqlite3.IntegrityError as exc:
            raise UserExistsError(safe_email) from exc
        conn.commit()
        user_id = int(cursor.lastrowid)

    return {"id": user_id, "name": safe_name, "email": safe_email}


def fetch_user(*, user_id: int) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            "SELECT id, name, email FROM users WHERE id = ? LIMIT 1",
            (int(user_id),),
        ).fetchone()

    if row is None:
        return None
    return _format_user(row)


def set_user_active(*, user_id: int, is_active: bool) -> bool:
    with connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            """
            UPDATE users
            SET is_active = ?,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE id = ?
            """,
            (1 if is_active else 0, int(user_id)),
        ).rowcount
        conn.commit()
    return bool(affected)


def verify_credentials_with_reason(*, email: str, password: str) -> tuple[dict[str, Any] | None, str | None]:
    safe_email = normalize_email(email)
    safe_password = password.strip()
    if not safe_email or not safe_password:
        return None, VERIFY_REASON_NOT_FOUND

    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            """
            SELECT id, name, email, password_hash, password_salt, is_active
            FROM users
            WHERE email = ?
            LIMIT 1
            """,
            (safe_email,),
        ).fetchone()

    if row is None:
        return None, VERIFY_REASON_NOT_FOUND

    if int(row["is_active"]) != 1:
        return None, VERIFY_REASON_ACCOUNT_INACTIVE

    expected_hash = str(row["password_hash"])
    actual_hash = _hash_password(password=safe_password, salt=str(row["password_salt"]))
    if not secrets.compare_digest(expected_hash, actual_hash):
        return None, VERIFY_REASON_INVALID_PASSWORD

    return _format_user(row), None


def create_auth_session(*, user_id: int, ttl_seconds: int = 7 * 24 * 3600) -> dict[str, Any]:
    safe_ttl = max(300, int(ttl_seconds))
    expires_at = _utc_now() + timedelta(seconds=safe_ttl)

    raw_token = secrets.token_urlsafe(48)
    token_hash = _hash_token(raw_token)

    with connect() as conn:
        _ensure_schema(conn)
        conn.execute(
            """
            INSERT INTO auth_sessions (user_id, token_hash, is_revoked, expires_at)
            VALUES (?, ?, 0, ?)
            """,
            (int(user_id), token_hash, _format_utc(expires_at)),
        )
        conn.commit()

    return {
        "token": raw_token,
        "expires_at": _format_utc(expires_at),
        "ttl_seconds": safe_ttl,
    }


def validate_auth_session(*, token: str) -> dict[str, Any] | None:
    safe_token = token.strip()
    if not safe_token:
        return None

    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            """
            SELECT
                s.user_id,
                s.is_revoked,
                s.expires_at,
                u.name,
                u.email,
                u.is_active
            FROM auth_sessions s
            JOIN users u ON u.id = s.user_id
            WHERE s.token_hash = ?
            LIMIT 1
            """,
            (_hash_token(safe_token),),
        ).fetchone()

    if row is None:
        return None

    if int(row["is_revoked"]) == 1 or int(row["is_active"]) != 1:
        return None

    expires_at_raw = str(row["expires_at"])
    expires_at = _parse_utc(expires_at_raw)
    if expires_at is None or expires_at <= _utc_now():
        return None

    return {
        "id": int(row["user_id"]),
        "name": str(row["name"]),
        "email": str(row["email"]),
        "expires_at": expires_at_raw,
    }


def revoke_auth_session(*, token: str) -> bool:
    safe_token = token.strip()
    if not safe_token:
        return False

    with connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            """
            UPDATE auth_sessions
            SET is_revoked = 1,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE token_hash = ? AND is_revoked = 0
            """,
            (_hash_token(safe_token),),
        ).rowcount
        conn.commit()

    return bool(affected)
