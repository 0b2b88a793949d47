from __future__ import annotations

import sqlite3
from typing import Any

from .db import connect, json_dumps, json_loads
from .slugs import SlugConflictError

CREATE_PORTFOLIOS_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS portfolios (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id INTEGER NOT NULL UNIQUE,
    slug TEXT,
    is_published INTEGER NOT NULL DEFAULT 0,
    published_at TEXT,
    content_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    FOREIGN KEY(owner_id) REFERENCES users(id) ON DELETE CASCADE
);
"""

# At most one published portfolio per slug. Unpublished rows keep their slug
# as a memo and do not participate.
CREATE_INDEX_SQLS = [
    """
    CREATE UNIQUE INDEX IF NOT EXISTS uq_portfolios_published_slug
    ON portfolios (slug)
    WHERE is_published = 1;
    """,
    """
    CREATE INDEX IF NOT EXISTS idx_portfolios_slug
    ON portfolios (slug);
    """,
]

CONTENT_FIELDS: tuple[str, ...] = (
    "headline",
    "bio",
    "socialLinks",
    "skills",
    "projects",
    "featuredResume",
    "theme",
)

SELECT_COLUMNS = """
    id,
    owner_id,
    slug,
    is_published,
    published_at,
    content_json,
    created_at,
    updated_at
"""


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_PORTFOLIOS_TABLE_SQL)
    for sql in CREATE_INDEX_SQLS:
        conn.execute(sql)


def _is_slug_violation(exc: sqlite3.IntegrityError) -> bool:
    return "portfolios.slug" in str(exc)


def _format_portfolio(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "id": int(row["id"]),
        "owner_id": int(row["owner_id"]),
        "slug": str(row["slug"]) if row["slug"] else None,
        "is_published": int(row["is_published"]) == 1,
        "published_at": str(row["published_at"]) if row["published_at"] else None,
        "content": json_loads(row["content_json"], fallback={}),
        "created_at": str(row["created_at"]),
        "updated_at": str(row["updated_at"]),
    }


def _fetch_row(conn: sqlite3.Connection, *, owner_id: int) -> sqlite3.Row | None:
    return conn.execute(
        f"SELECT {SELECT_COLUMNS} FROM portfolios WHERE owner_id = ? LIMIT 1",
        (int(owner_id),),
    ).fetchone()


def _merged_content_json(row: sqlite3.Row | None, content: dict[str, Any] | None) -> str:
    merged: dict[str, Any] = json_loads(row["content_json"], fallback={}) if row is not None else {}
    for key, value in (content or {}).items():
        if key in CONTENT_FIELDS:
            merged[key] = value
    return json_dumps(merged)


def fetch_portfolio(*, owner_id: int) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        row = _fetch_row(conn, owner_id=owner_id)

    if row is None:
        return None
    return _format_portfolio(row)


def fetch_published_portfolio(*, slug: str) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            f"""
            SELECT {SELECT_COLUMNS}
            FROM portfolios
            WHERE slug = ? AND is_published = 1
            LIMIT 1
            """,
            (slug,),
        ).fetchone()

    if row is None:
        return None
    return _format_portfolio(row)


def slug_taken(slug: str, exclude_owner_id: int | None = None) -> bool:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            """
            SELECT 1
            FROM portfolios
            WHERE slug = ?
              AND is_published = 1
              AND (? IS NULL OR owner_id != ?)
            LIMIT 1
            """,
            (slug, exclude_owner_id, exclude_owner_id),
        ).fetchone()
    return row is not None


def upsert_portfolio_content(*, owner_id: int, content: dict[str, Any]) -> dict[str, Any]:
    with connect() as conn:
        _ensure_schema(conn)
        existing = _fetch_row(conn, owner_id=owner_id)
        conn.execute(
            """
            INSERT INTO portfolios (owner_id, content_json)
            VALUES (?, ?)
            ON CONFLICT(owner_id) DO UPDATE SET
                content_json = excluded.content_json,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            """,
            (int(owner_id), _merged_content_json(existing, content)),
        )
        conn.commit()
        row = _fetch_row(conn, owner_id=owner_id)

    if row is None:
        raise RuntimeError("portfolio saved but failed to fetch")
    return _format_portfolio(row)


def publish_portfolio_record(
    *,
    owner_id: int,
    slug: str,
    content: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Write slug + published state (and merged content) in one statement.

    Raises ``SlugConflictError`` when another published portfolio holds
    ``slug``; the transaction is rolled back and the row keeps its prior state.
    """
    with connect() as conn:
        _ensure_schema(conn)
        existing = _fetch_row(conn, owner_id=owner_id)
        try:
            conn.execute(
                """
                INSERT INTO portfolios (owner_id, slug, is_published, published_at, content_json)
                VALUES (?, ?, 1, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'), ?)
                ON CONFLICT(owner_id) DO UPDATE SET
                    slug = excluded.slug,
                    is_published = 1,
                    published_at = excluded.published_at,
                    content_json = excluded.content_json,
                    updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
                """,
                (int(owner_id), slug, _merged_content_json(existing, content)),
            )
        except sqlite3.IntegrityError as exc:
            if _is_slug_violation(exc):
                raise SlugConflictError(slug) from exc
            raise
        conn.commit()
        row = _fetch_row(conn, owner_id=owner_id)

    if row is None:
        raise RuntimeError("portfolio published but failed to fetch")
    return _format_portfolio(row)


def unpublish_portfolio_record(*, owner_id: int) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            """
            UPDATE portfolios
            SET is_published = 0,
                published_at = NULL,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE owner_id = ?
            """,
            (int(owner_id),),
        ).rowcount
        conn.commit()
        row = _fetch_row(conn, owner_id=owner_id) if affected else None

    if row is None:
        return None
    return _format_portfolio(row)
