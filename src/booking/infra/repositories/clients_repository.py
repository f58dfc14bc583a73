"""Clients repository.

Uses raw SQL with psycopg2 (no ORM). ``clients.phone`` holds the canonical
contact key (``+521XXXXXXXXXX``), the same value conversations are keyed by.
"""

from __future__ import annotations

from typing import Any, Literal

from psycopg2.extensions import cursor as PgCursor

Segment = Literal["all", "created7d", "inactive30d"]

PAGE_SIZE = 50

_SEGMENT_FILTERS: dict[str, str] = {
    "all": "",
    "created7d": "AND c.created_at >= now() - interval '7 days'",
    "inactive30d": """
        AND NOT EXISTS (
            SELECT 1 FROM conversations cv
            WHERE cv.client_id = c.id AND cv.last_message_at >= now() - interval '30 days'
        )
    """,
}


def _row_to_client(row: tuple) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "name": row[1],
        "phone": row[2],
        "created_at": row[3],
        "updated_at": row[4],
    }


def get_client(cur: PgCursor, *, business_id: str, client_id: str) -> dict[str, Any] | None:
    cur.execute(
        """
        SELECT id, name, phone, created_at, updated_at
        FROM clients
        WHERE id = %s AND business_id = %s
        """,
        (client_id, business_id),
    )
    row = cur.fetchone()
    return _row_to_client(row) if row else None


def find_by_phones(cur: PgCursor, *, business_id: str, phones: list[str]) -> dict[str, Any] | None:
    """Oldest client whose stored phone matches any of ``phones``."""
    if not phones:
        return None
    cur.execute(
        """
        SELECT id, name, phone, created_at, updated_at
        FROM clients
        WHERE business_id = %s AND phone = ANY(%s)
        ORDER BY created_at
        LIMIT 1
        """,
        (business_id, phones),
    )
    row = cur.fetchone()
    return _row_to_client(row) if row else None


def insert_client(
    cur: PgCursor, *, business_id: str, phone: str, name: str | None
) -> dict[str, Any] | None:
    """Create a client. Returns None when the phone is already taken."""
    cur.execute(
        """
        INSERT INTO clients (business_id, phone, name)
        VALUES (%s, %s, %s)
        ON CONFLICT (business_id, phone) DO NOTHING
        RETURNING id, name, phone, created_at, updated_at
        """,
        (business_id, phone, name),
    )
    row = cur.fetchone()
    return _row_to_client(row) if row else None


def upsert_client(
    cur: PgCursor, *, business_id: str, phone: str, name: str | None
) -> dict[str, Any]:
    """Create or refresh a client by phone. A given name replaces the stored one."""
    cur.execute(
        """
        INSERT INTO clients (business_id, phone, name)
        VALUES (%s, %s, %s)
        ON CONFLICT (business_id, phone) DO UPDATE
        SET name = COALESCE(EXCLUDED.name, clients.name),
            updated_at = now()
        RETURNING id, name, phone, created_at, updated_at
        """,
        (business_id, phone, name),
    )
    return _row_to_client(cur.fetchone())


def list_clients(
    cur: PgCursor,
    *,
    business_id: str,
    q: str = "",
    segment: Segment = "all",
    limit: int = PAGE_SIZE,
) -> list[dict[str, Any]]:
    """Clients, most recently updated first, with their latest conversation summary."""
    params: list[Any] = [business_id]
    search = ""
    if q:
        search = "AND (c.name ILIKE %s OR c.phone LIKE %s)"
        like = f"%{q}%"
        params.extend([like, like])
    params.append(limit)

    cur.execute(
        f"""
        SELECT c.id, c.name, c.phone, c.created_at, c.updated_at,
               (SELECT count(*) FROM appointments a WHERE a.client_id = c.id),
               cv.id, cv.unread_count, cv.last_message_at
        FROM clients c
        LEFT JOIN LATERAL (
            SELECT id, unread_count, last_message_at
            FROM conversations
            WHERE client_id = c.id
            ORDER BY last_message_at DESC NULLS LAST, updated_at DESC
            LIMIT 1
        ) cv ON true
        WHERE c.business_id = %s
        {_SEGMENT_FILTERS[segment]}
        {search}
        ORDER BY c.updated_at DESC
        LIMIT %s
        """,
        params,
    )
    rows = []
    for row in cur.fetchall():
        item = _row_to_client(row[:5])
        item.update(
            {
                "appointments_count": row[5],
                "conversation_id": str(row[6]) if row[6] else None,
                "unread_count": row[7] or 0,
                "last_message_at": row[8],
            }
        )
        rows.append(item)
    return rows
