"""Webhook audit log.

Every attributed callback gets a row before any side effect runs. The row
is only touched again to record the outcome (PROCESSED or FAILED).
"""

from __future__ import annotations

import json
from typing import Any

from psycopg2.extensions import cursor as PgCursor

# Stored error text is capped; payloads from Meta can echo large bodies.
_MAX_ERROR_LENGTH = 500


def insert_received(
    cur: PgCursor,
    *,
    business_id: str | None,
    provider: str,
    event_type: str,
    payload: dict[str, Any],
) -> str:
    cur.execute(
        """
        INSERT INTO webhook_events (business_id, provider, event_type, payload, status)
        VALUES (%s, %s, %s, %s::jsonb, 'RECEIVED')
        RETURNING id
        """,
        (business_id, provider, event_type, json.dumps(payload)),
    )
    return str(cur.fetchone()[0])


def mark_processed(cur: PgCursor, event_id: str) -> None:
    cur.execute(
        """
        UPDATE webhook_events
        SET status = 'PROCESSED', processed_at = now()
        WHERE id = %s
        """,
        (event_id,),
    )


def mark_failed(cur: PgCursor, event_id: str, error: str) -> None:
    cur.execute(
        """
        UPDATE webhook_events
        SET status = 'FAILED', processed_at = now(), error = %s
        WHERE id = %s
        """,
        (error[:_MAX_ERROR_LENGTH], event_id),
    )
