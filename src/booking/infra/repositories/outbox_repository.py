"""Outbox repository - durable record of every outbound send attempt.

Uses raw SQL with psycopg2 (no ORM).

Lifecycle: PENDING -> SENDING -> SENT | FAILED. A FAILED row goes back to
PENDING only through an explicit retry. The worker sweep re-sends PENDING
rows whose next_attempt_at has passed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from booking.infra.db import for_update

PENDING = "PENDING"
SENDING = "SENDING"
SENT = "SENT"
FAILED = "FAILED"

_OUTBOX_COLUMNS = """
    id, business_id, conversation_id, provider, channel, contact_key, to_phone,
    text, status, attempt_count, next_attempt_at, last_error, created_at, updated_at
"""


def _row_to_outbox(row: tuple) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "business_id": str(row[1]),
        "conversation_id": str(row[2]) if row[2] else None,
        "provider": row[3],
        "channel": row[4],
        "contact_key": row[5],
        "to_phone": row[6],
        "text": row[7],
        "status": row[8],
        "attempt_count": row[9],
        "next_attempt_at": row[10],
        "last_error": row[11],
        "created_at": row[12],
        "updated_at": row[13],
    }


def create_outbox(
    cur: PgCursor,
    *,
    business_id: str,
    conversation_id: str,
    contact_key: str | None,
    to_phone: str,
    text: str,
    provider: str = "whatsapp",
    channel: str = "whatsapp",
) -> str:
    """Insert a PENDING row due immediately. Returns its id."""
    cur.execute(
        """
        INSERT INTO outbox_messages (
            business_id, conversation_id, provider, channel, contact_key,
            to_phone, text, status, attempt_count, next_attempt_at
        )
        VALUES (%s, %s, %s, %s, %s, %s, %s, 'PENDING', 0, now())
        RETURNING id
        """,
        (business_id, conversation_id, provider, channel, contact_key, to_phone, text),
    )
    return str(cur.fetchone()[0])


def get_outbox(cur: PgCursor, outbox_id: str) -> dict[str, Any] | None:
    cur.execute(f"SELECT {_OUTBOX_COLUMNS} FROM outbox_messages WHERE id = %s", (outbox_id,))
    row = cur.fetchone()
    return _row_to_outbox(row) if row else None


def lease_for_send(cur: PgCursor, outbox_id: str) -> bool:
    """PENDING -> SENDING, counting the attempt. False if the row was not PENDING."""
    cur.execute(
        """
        UPDATE outbox_messages
        SET status = 'SENDING', attempt_count = attempt_count + 1, updated_at = now()
        WHERE id = %s AND status = 'PENDING'
        """,
        (outbox_id,),
    )
    return cur.rowcount == 1


def mark_sent(cur: PgCursor, outbox_id: str) -> None:
    cur.execute(
        """
        UPDATE outbox_messages
        SET status = 'SENT', last_error = NULL, updated_at = now()
        WHERE id = %s
        """,
        (outbox_id,),
    )


def mark_failed(cur: PgCursor, outbox_id: str, error: str) -> None:
    cur.execute(
        """
        UPDATE outbox_messages
        SET status = 'FAILED', last_error = %s, updated_at = now()
        WHERE id = %s
        """,
        (error, outbox_id),
    )


def reschedule(cur: PgCursor, outbox_id: str, *, error: str, next_attempt_at: datetime) -> None:
    """Back to PENDING with a later due time after a transient failure."""
    cur.execute(
        """
        UPDATE outbox_messages
        SET status = 'PENDING', last_error = %s, next_attempt_at = %s, updated_at = now()
        WHERE id = %s
        """,
        (error, next_attempt_at, outbox_id),
    )


def reset_failed_to_pending(cur: PgCursor, outbox_id: str) -> dict[str, Any] | None:
    """FAILED -> PENDING in a single conditional statement.

    Returns:
        The updated row, or None when the row is missing or not FAILED.
    """
    cur.execute(
        f"""
        UPDATE outbox_messages
        SET status = 'PENDING', next_attempt_at = now(), last_error = NULL, updated_at = now()
        WHERE id = %s AND status = 'FAILED'
        RETURNING {_OUTBOX_COLUMNS}
        """,
        (outbox_id,),
    )
    row = cur.fetchone()
    return _row_to_outbox(row) if row else None


def claim_due(cur: PgCursor, *, limit: int) -> list[dict[str, Any]]:
    """Lease up to ``limit`` due PENDING rows for the sweep.

    SKIP LOCKED lets concurrent sweeps split the backlog instead of
    blocking on each other. Claimed rows come back already SENDING.
    """
    rows = for_update(
        cur,
        f"""
        SELECT {_OUTBOX_COLUMNS}
        FROM outbox_messages
        WHERE status = 'PENDING' AND next_attempt_at <= now()
        ORDER BY next_attempt_at
        LIMIT %s
        """,
        (limit,),
        skip_locked=True,
    )
    claimed = [_row_to_outbox(row) for row in rows]
    if claimed:
        cur.execute(
            """
            UPDATE outbox_messages
            SET status = 'SENDING', attempt_count = attempt_count + 1, updated_at = now()
            WHERE id = ANY(%s::uuid[])
            """,
            ([item["id"] for item in claimed],),
        )
        for item in claimed:
            item["status"] = SENDING
            item["attempt_count"] += 1
    return claimed
