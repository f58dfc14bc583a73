"""Businesses (tenants) repository.

Uses raw SQL with psycopg2 (no ORM). Deletion is soft: ``deleted_at`` is set
and the row stays, so an admin can restore it.
"""

from __future__ import annotations

from typing import Any

from psycopg2.extensions import cursor as PgCursor

LIST_LIMIT = 200


def _row_to_business(row: tuple) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "name": row[1],
        "created_at": row[2],
        "deleted_at": row[3],
    }


def create_business(cur: PgCursor, name: str) -> dict[str, Any]:
    cur.execute(
        """
        INSERT INTO businesses (name)
        VALUES (%s)
        RETURNING id, name, created_at, deleted_at
        """,
        (name,),
    )
    return _row_to_business(cur.fetchone())


def list_businesses(cur: PgCursor, *, limit: int = LIST_LIMIT) -> list[dict[str, Any]]:
    """Newest first, deleted ones included."""
    cur.execute(
        """
        SELECT id, name, created_at, deleted_at
        FROM businesses
        ORDER BY created_at DESC
        LIMIT %s
        """,
        (limit,),
    )
    return [_row_to_business(row) for row in cur.fetchall()]


def exists(cur: PgCursor, business_id: str, *, include_deleted: bool = False) -> bool:
    if include_deleted:
        cur.execute("SELECT 1 FROM businesses WHERE id = %s", (business_id,))
    else:
        cur.execute(
            "SELECT 1 FROM businesses WHERE id = %s AND deleted_at IS NULL",
            (business_id,),
        )
    return cur.fetchone() is not None


def soft_delete(cur: PgCursor, business_id: str) -> bool:
    """True if the business was live and is now deleted."""
    cur.execute(
        """
        UPDATE businesses
        SET deleted_at = now(), updated_at = now()
        WHERE id = %s AND deleted_at IS NULL
        """,
        (business_id,),
    )
    return cur.rowcount == 1


def restore(cur: PgCursor, business_id: str) -> bool:
    """True if the business exists (restored or already live)."""
    cur.execute(
        """
        UPDATE businesses
        SET deleted_at = NULL, updated_at = now()
        WHERE id = %s
        """,
        (business_id,),
    )
    return cur.rowcount == 1
