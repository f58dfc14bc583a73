"""Messages repository - inbox message store.

Uses raw SQL with psycopg2 (no ORM).

Idempotency: (provider, provider_message_id) is unique. Inbound inserts use
ON CONFLICT DO NOTHING, and an empty RETURNING is the duplicate signal.
Outbound rows are created QUEUED without a provider id and receive it once
Meta accepts the send.

Delivery receipts may arrive in any order. ``delivered_at``/``read_at`` are
each written once, independently; ``status`` only ever moves forward
(QUEUED < SENT < DELIVERED < READ).
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from booking.infra.time import utc_now
from booking.whatsapp.models import StatusUpdate

INBOUND = "INBOUND"
OUTBOUND = "OUTBOUND"

PAGE_SIZE = 50

_MESSAGE_COLUMNS = """
    id, conversation_id, direction, text, status, provider_message_id,
    payload, created_at, updated_at, delivered_at, read_at
"""

_STATUS_SQL: dict[str, str] = {
    "sent": """
        UPDATE messages
        SET status = 'SENT', updated_at = now()
        WHERE business_id = %(business_id)s AND provider = %(provider)s
          AND provider_message_id = %(provider_message_id)s AND direction = 'OUTBOUND'
          AND status = 'QUEUED'
    """,
    "delivered": """
        UPDATE messages
        SET delivered_at = COALESCE(delivered_at, %(at)s),
            status = CASE WHEN status IN ('QUEUED', 'SENT') THEN 'DELIVERED' ELSE status END,
            updated_at = now()
        WHERE business_id = %(business_id)s AND provider = %(provider)s
          AND provider_message_id = %(provider_message_id)s AND direction = 'OUTBOUND'
    """,
    "read": """
        UPDATE messages
        SET read_at = COALESCE(read_at, %(at)s),
            status = CASE WHEN status IN ('QUEUED', 'SENT', 'DELIVERED') THEN 'READ' ELSE status END,
            updated_at = now()
        WHERE business_id = %(business_id)s AND provider = %(provider)s
          AND provider_message_id = %(provider_message_id)s AND direction = 'OUTBOUND'
    """,
    "failed": """
        UPDATE messages
        SET status = 'FAILED',
            payload = COALESCE(payload, '{}'::jsonb) || %(error)s::jsonb,
            updated_at = now()
        WHERE business_id = %(business_id)s AND provider = %(provider)s
          AND provider_message_id = %(provider_message_id)s AND direction = 'OUTBOUND'
          AND status IN ('QUEUED', 'SENT')
    """,
}


def _row_to_message(row: tuple) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "conversation_id": str(row[1]),
        "direction": row[2],
        "text": row[3],
        "status": row[4],
        "provider_message_id": row[5],
        "payload": row[6],
        "created_at": row[7],
        "updated_at": row[8],
        "delivered_at": row[9],
        "read_at": row[10],
    }


def insert_inbound(
    cur: PgCursor,
    *,
    business_id: str,
    conversation_id: str,
    provider: str,
    provider_message_id: str,
    from_phone: str,
    to_phone: str,
    text: str | None,
    payload: dict[str, Any],
    created_at: datetime | None = None,
) -> str | None:
    """Store a customer message as DELIVERED.

    Returns:
        The new message id, or None if this provider message was already stored.
    """
    cur.execute(
        """
        INSERT INTO messages (
            business_id, conversation_id, direction, provider, provider_message_id,
            from_phone, to_phone, text, payload, status, delivered_at, created_at
        )
        VALUES (%s, %s, 'INBOUND', %s, %s, %s, %s, %s, %s::jsonb, 'DELIVERED', %s, %s)
        ON CONFLICT (provider, provider_message_id) DO NOTHING
        RETURNING id
        """,
        (
            business_id,
            conversation_id,
            provider,
            provider_message_id,
            from_phone,
            to_phone,
            text,
            json.dumps(payload),
            created_at or utc_now(),
            created_at or utc_now(),
        ),
    )
    row = cur.fetchone()
    return str(row[0]) if row else None


def insert_outbound(
    cur: PgCursor,
    *,
    business_id: str,
    conversation_id: str,
    provider: str,
    from_phone: str | None,
    to_phone: str,
    text: str,
    outbox_id: str,
) -> str:
    cur.execute(
        """
        INSERT INTO messages (
            business_id, conversation_id, direction, provider,
            from_phone, to_phone, text, payload, status
        )
        VALUES (%s, %s, 'OUTBOUND', %s, %s, %s, %s, %s::jsonb, 'QUEUED')
        RETURNING id
        """,
        (
            business_id,
            conversation_id,
            provider,
            from_phone,
            to_phone,
            text,
            json.dumps({"outboxId": outbox_id}),
        ),
    )
    return str(cur.fetchone()[0])


def apply_status_update(
    cur: PgCursor,
    *,
    business_id: str,
    provider: str,
    update: StatusUpdate,
) -> int:
    """Apply one delivery receipt to our outbound message.

    Returns:
        Rows changed. 0 for unknown provider ids, unsupported statuses, or
        receipts that would move the status backwards.
    """
    sql = _STATUS_SQL.get(update.status)
    if sql is None:
        return 0

    error = {
        "providerError": {
            "code": update.error_code,
            "message": update.error_title,
            "at": (update.timestamp or utc_now()).isoformat(),
        }
    }
    cur.execute(
        sql,
        {
            "business_id": business_id,
            "provider": provider,
            "provider_message_id": update.provider_message_id,
            "at": update.timestamp or utc_now(),
            "error": json.dumps(error),
        },
    )
    return cur.rowcount


def mark_outbound_sent(
    cur: PgCursor,
    message_id: str,
    *,
    provider_message_id: str | None,
    used_template: bool,
    template: str | None,
) -> None:
    details = {"usedTemplate": used_template, "template": template, "error": None}
    cur.execute(
        """
        UPDATE messages
        SET status = CASE WHEN status IN ('QUEUED', 'FAILED') THEN 'SENT' ELSE status END,
            provider_message_id = COALESCE(%s, provider_message_id),
            payload = COALESCE(payload, '{}'::jsonb) || %s::jsonb,
            updated_at = now()
        WHERE id = %s
        """,
        (provider_message_id, json.dumps(details), message_id),
    )


def mark_outbound_failed(
    cur: PgCursor,
    message_id: str,
    *,
    error_message: str,
    error_code: int | None,
    used_template: bool,
    template: str | None,
) -> None:
    details = {
        "usedTemplate": used_template,
        "template": template,
        "error": {"message": error_message, "code": error_code, "at": utc_now().isoformat()},
    }
    cur.execute(
        """
        UPDATE messages
        SET status = 'FAILED',
            payload = COALESCE(payload, '{}'::jsonb) || %s::jsonb,
            updated_at = now()
        WHERE id = %s
        """,
        (json.dumps(details), message_id),
    )


def requeue_outbound(cur: PgCursor, message_id: str) -> None:
    """Back to QUEUED after an admin retry of a failed send."""
    cur.execute(
        """
        UPDATE messages
        SET status = 'QUEUED', updated_at = now()
        WHERE id = %s AND status = 'FAILED'
        """,
        (message_id,),
    )


def find_by_outbox_id(cur: PgCursor, outbox_id: str) -> str | None:
    cur.execute(
        """
        SELECT id FROM messages
        WHERE direction = 'OUTBOUND' AND payload ->> 'outboxId' = %s
        ORDER BY created_at
        LIMIT 1
        """,
        (outbox_id,),
    )
    row = cur.fetchone()
    return str(row[0]) if row else None


def belongs_to_conversation(
    cur: PgCursor, *, business_id: str, conversation_id: str, message_id: str
) -> bool:
    cur.execute(
        """
        SELECT 1 FROM messages
        WHERE id = %s AND conversation_id = %s AND business_id = %s
        """,
        (message_id, conversation_id, business_id),
    )
    return cur.fetchone() is not None


def list_messages(
    cur: PgCursor,
    *,
    business_id: str,
    conversation_id: str,
    after_id: str | None = None,
    limit: int = PAGE_SIZE,
) -> list[dict[str, Any]]:
    """Messages oldest first. With ``after_id`` only those strictly after it.

    Without a cursor the latest ``limit`` messages are returned.
    """
    if after_id:
        cur.execute(
            f"""
            SELECT {_MESSAGE_COLUMNS}
            FROM messages m
            WHERE m.business_id = %s AND m.conversation_id = %s
              AND (m.created_at, m.id) > (
                  SELECT created_at, id FROM messages WHERE id = %s
              )
            ORDER BY m.created_at, m.id
            LIMIT %s
            """,
            (business_id, conversation_id, after_id, limit),
        )
        return [_row_to_message(row) for row in cur.fetchall()]

    cur.execute(
        f"""
        SELECT {_MESSAGE_COLUMNS}
        FROM messages
        WHERE business_id = %s AND conversation_id = %s
        ORDER BY created_at DESC, id DESC
        LIMIT %s
        """,
        (business_id, conversation_id, limit),
    )
    return [_row_to_message(row) for row in reversed(cur.fetchall())]


def list_outbound_updates(
    cur: PgCursor,
    *,
    business_id: str,
    conversation_id: str,
    since: datetime,
    limit: int = PAGE_SIZE,
) -> list[dict[str, Any]]:
    """Outbound messages whose delivery state changed after ``since``."""
    cur.execute(
        f"""
        SELECT {_MESSAGE_COLUMNS}
        FROM messages
        WHERE business_id = %s AND conversation_id = %s
          AND direction = 'OUTBOUND' AND updated_at > %s
        ORDER BY updated_at
        LIMIT %s
        """,
        (business_id, conversation_id, since, limit),
    )
    return [_row_to_message(row) for row in cur.fetchall()]
