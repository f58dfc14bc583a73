"""Appointments repository.

Uses raw SQL with psycopg2 (no ORM). Every statement is scoped by
business_id; an id from another business behaves like a missing row.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

SCHEDULED = "SCHEDULED"
COMPLETED = "COMPLETED"
CANCELED = "CANCELED"
NO_SHOW = "NO_SHOW"

STATUSES = frozenset({SCHEDULED, COMPLETED, CANCELED, NO_SHOW})

_UNSET = object()


def _row_to_appointment(row: tuple) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "conversation_id": str(row[1]) if row[1] else None,
        "client_id": str(row[2]) if row[2] else None,
        "starts_at": row[3],
        "ends_at": row[4],
        "service": row[5],
        "notes": row[6],
        "status": row[7],
    }


def list_between(
    cur: PgCursor, *, business_id: str, start: datetime, end: datetime
) -> list[dict[str, Any]]:
    """Appointments starting in [start, end), with their client."""
    cur.execute(
        """
        SELECT a.id, a.conversation_id, a.client_id, a.starts_at, a.ends_at,
               a.service, a.notes, a.status, c.name, c.phone
        FROM appointments a
        LEFT JOIN clients c ON c.id = a.client_id
        WHERE a.business_id = %s AND a.starts_at >= %s AND a.starts_at < %s
        ORDER BY a.starts_at
        """,
        (business_id, start, end),
    )
    items = []
    for row in cur.fetchall():
        item = _row_to_appointment(row[:8])
        item["client"] = (
            {"id": item["client_id"], "name": row[8], "phone": row[9]} if item["client_id"] else None
        )
        items.append(item)
    return items


def get_for_update(cur: PgCursor, *, business_id: str, appointment_id: str) -> dict[str, Any] | None:
    cur.execute(
        """
        SELECT id, conversation_id, client_id, starts_at, ends_at, service, notes, status
        FROM appointments
        WHERE id = %s AND business_id = %s
        FOR UPDATE
        """,
        (appointment_id, business_id),
    )
    row = cur.fetchone()
    return _row_to_appointment(row) if row else None


def insert_appointment(
    cur: PgCursor,
    *,
    business_id: str,
    client_id: str | None,
    conversation_id: str | None,
    starts_at: datetime,
    ends_at: datetime,
    service: str | None,
    notes: str | None,
) -> str:
    cur.execute(
        """
        INSERT INTO appointments (
            business_id, client_id, conversation_id, starts_at, ends_at, service, notes, status
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, 'SCHEDULED')
        RETURNING id
        """,
        (business_id, client_id, conversation_id, starts_at, ends_at, service, notes),
    )
    return str(cur.fetchone()[0])


def set_status(cur: PgCursor, *, business_id: str, appointment_id: str, status: str) -> bool:
    cur.execute(
        """
        UPDATE appointments
        SET status = %s, updated_at = now()
        WHERE id = %s AND business_id = %s
        """,
        (status, appointment_id, business_id),
    )
    return cur.rowcount == 1


def reschedule(
    cur: PgCursor,
    *,
    business_id: str,
    appointment_id: str,
    starts_at: datetime,
    ends_at: datetime,
    service: Any = _UNSET,
    notes: Any = _UNSET,
) -> bool:
    """Move an appointment and put it back to SCHEDULED.

    ``service``/``notes`` are only written when passed (None clears them).
    """
    assignments = ["starts_at = %s", "ends_at = %s", "status = 'SCHEDULED'", "updated_at = now()"]
    params: list[Any] = [starts_at, ends_at]
    if service is not _UNSET:
        assignments.append("service = %s")
        params.append(service)
    if notes is not _UNSET:
        assignments.append("notes = %s")
        params.append(notes)
    params.extend([appointment_id, business_id])

    cur.execute(
        f"""
        UPDATE appointments
        SET {", ".join(assignments)}
        WHERE id = %s AND business_id = %s
        """,
        params,
    )
    return cur.rowcount == 1


def link_conversation(
    cur: PgCursor, *, business_id: str, appointment_id: str, conversation_id: str
) -> None:
    cur.execute(
        """
        UPDATE appointments
        SET conversation_id = %s, updated_at = now()
        WHERE id = %s AND business_id = %s
        """,
        (conversation_id, appointment_id, business_id),
    )
