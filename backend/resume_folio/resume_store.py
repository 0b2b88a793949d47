from __future__ import annotations

import sqlite3
from typing import Any

from .db import connect, json_dumps, json_loads

CREATE_RESUMES_TABLE_SQL = """
CREATE TABLE IF NOT EXISTS resumes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    owner_id INTEGER NOT NULL,
    title TEXT NOT NULL,
    document_json TEXT NOT NULL DEFAULT '{}',
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    is_deleted INTEGER NOT NULL DEFAULT 0
);
"""

CREATE_INDEX_SQLS = [
    """
    CREATE INDEX IF NOT EXISTS idx_resumes_owner
    ON resumes (owner_id, updated_at DESC, id DESC);
    """,
]

DOCUMENT_FIELDS: tuple[str, ...] = (
    "personalInfo",
    "experiences",
    "education",
    "skills",
    "projects",
    "aiMetadata",
)


def _ensure_schema(conn: sqlite3.Connection) -> None:
    conn.execute(CREATE_RESUMES_TABLE_SQL)
    for sql in CREATE_INDEX_SQLS:
        conn.execute(sql)


def _split_document(document: dict[str, Any]) -> dict[str, Any]:
    return {key: document[key] for key in DOCUMENT_FIELDS if key in document}


def _format_resume(row: sqlite3.Row) -> dict[str, Any]:
    document = json_loads(row["document_json"], fallback={})
    return {
        "id": int(row["id"]),
        "owner_id": int(row["owner_id"]),
        "title": str(row["title"]),
        "personalInfo": document.get("personalInfo") or {},
        "experiences": document.get("experiences") or [],
        "education": document.get("education") or [],
        "skills": document.get("skills") or [],
        "projects": document.get("projects") or [],
        "aiMetadata": document.get("aiMetadata") or {},
        "created_at": str(row["created_at"]),
        "updated_at": str(row["updated_at"]),
    }


def create_resume(*, owner_id: int, title: str, document: dict[str, Any] | None = None) -> dict[str, Any]:
    with connect() as conn:
        _ensure_schema(conn)
        cursor = conn.execute(
            """
            INSERT INTO resumes (owner_id, title, document_json)
            VALUES (?, ?, ?)
            """,
            (int(owner_id), title.strip(), json_dumps(_split_document(document or {}))),
        )
        conn.commit()
        resume_id = int(cursor.lastrowid)

    created = fetch_resume(resume_id=resume_id, owner_id=owner_id)
    if created is None:
        raise RuntimeError("resume created but failed to fetch")
    return created


def list_resumes(*, owner_id: int, limit: int = 50) -> list[dict[str, Any]]:
    safe_limit = max(1, min(200, int(limit)))
    with connect() as conn:
        _ensure_schema(conn)
        rows = conn.execute(
            """
            SELECT id, owner_id, title, document_json, created_at, updated_at
            FROM resumes
            WHERE owner_id = ? AND is_deleted = 0
            ORDER BY updated_at DESC, id DESC
            LIMIT ?
            """,
            (int(owner_id), safe_limit),
        ).fetchall()
    return [_format_resume(row) for row in rows]


def count_resumes(*, owner_id: int) -> int:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            "SELECT COUNT(*) AS c FROM resumes WHERE owner_id = ? AND is_deleted = 0",
            (int(owner_id),),
        ).fetchone()
    if row is None:
        return 0
    return int(row["c"])


def fetch_resume(*, resume_id: int, owner_id: int | None = None) -> dict[str, Any] | None:
    query = """
        SELECT id, owner_id, title, document_json, created_at, updated_at
        FROM resumes
        WHERE id = ? AND is_deleted = 0
    """
    params: list[Any] = [int(resume_id)]
    if owner_id is not None:
        query += " AND owner_id = ?"
        params.append(int(owner_id))
    query += " LIMIT 1"

    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(query, tuple(params)).fetchone()

    if row is None:
        return None
    return _format_resume(row)


def update_resume(
    *,
    resume_id: int,
    owner_id: int,
    title: str | None,
    document: dict[str, Any] | None,
) -> dict[str, Any] | None:
    with connect() as conn:
        _ensure_schema(conn)
        row = conn.execute(
            """
            SELECT document_json
            FROM resumes
            WHERE id = ? AND owner_id = ? AND is_deleted = 0
            LIMIT 1
            """,
            (int(resume_id), int(owner_id)),
        ).fetchone()
        if row is None:
            return None

        merged = json_loads(row["document_json"], fallback={})
        merged.update(_split_document(document or {}))

        conn.execute(
            """
            UPDATE resumes
            SET title = COALESCE(?, title),
                document_json = ?,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE id = ?
            """,
            (title.strip() if title is not None else None, json_dumps(merged), int(resume_id)),
        )
        conn.commit()

    return fetch_resume(resume_id=resume_id, owner_id=owner_id)


def delete_resume(*, resume_id: int, owner_id: int) -> bool:
    with connect() as conn:
        _ensure_schema(conn)
        affected = conn.execute(
            """
            UPDATE resumes
            SET is_deleted = 1,
                updated_at = strftime('%Y-%m-%dT%H:%M:%fZ', 'now')
            WHERE id = ? AND owner_id = ? AND is_deleted = 0
            """,
            (int(resume_id), int(owner_id)),
        ).rowcount
        conn.commit()

    return bool(affected)
