"""Conversation registry.

One conversation per (business, channel, contact key). The contact key is
the loose-normalized phone, so every spelling of a customer's number lands
in the same thread. Rows created before contact keys existed only carry
``contact_phone``; they are adopted (their key filled in) the first time
the contact is seen again instead of being duplicated.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from booking.infra.repositories import clients_repository
from booking.infra.time import utc_now

from .phone import normalize_phone_loose, phone_candidates

WHATSAPP = "whatsapp"

INBOX_PAGE_SIZE = 50


class ConversationNotFoundError(Exception):
    """No conversation with that id in the caller's business."""


class ContactPhoneMissingError(Exception):
    """The conversation (or client) has no usable phone number."""


@dataclass(frozen=True)
class ConversationRef:
    id: str
    client_id: str | None
    created: bool


_CONVERSATION_COLUMNS = """
    c.id, c.business_id, c.channel, c.contact_key, c.contact_phone, c.contact_display,
    c.client_id, c.last_message_at, c.unread_count, c.last_read_message_id,
    c.created_at, c.updated_at
"""


def _row_to_conversation(row: tuple) -> dict[str, Any]:
    return {
        "id": str(row[0]),
        "business_id": str(row[1]),
        "channel": row[2],
        "contact_key": row[3],
        "contact_phone": row[4],
        "contact_display": row[5],
        "client_id": str(row[6]) if row[6] else None,
        "last_message_at": row[7],
        "unread_count": row[8],
        "last_read_message_id": str(row[9]) if row[9] else None,
        "created_at": row[10],
        "updated_at": row[11],
    }


def contact_phone_of(conversation: dict[str, Any]) -> str:
    """Best phone to send to: contact key first, legacy contact_phone second."""
    return normalize_phone_loose(conversation.get("contact_key") or conversation.get("contact_phone"))


def get_conversation(cur: PgCursor, *, business_id: str, conversation_id: str) -> dict[str, Any] | None:
    cur.execute(
        f"""
        SELECT {_CONVERSATION_COLUMNS}
        FROM conversations c
        WHERE c.id = %s AND c.business_id = %s
        """,
        (conversation_id, business_id),
    )
    row = cur.fetchone()
    return _row_to_conversation(row) if row else None


def _adopt_legacy(
    cur: PgCursor, *, business_id: str, channel: str, contact_key: str, raw_phone: str
) -> tuple[str, str | None] | None:
    cur.execute(
        """
        SELECT id, client_id FROM conversations
        WHERE business_id = %s AND contact_key IS NULL AND contact_phone = ANY(%s)
        ORDER BY created_at
        LIMIT 1
        FOR UPDATE
        """,
        (business_id, phone_candidates(raw_phone)),
    )
    row = cur.fetchone()
    if row is None:
        return None
    cur.execute(
        """
        UPDATE conversations
        SET contact_key = %s, channel = %s, updated_at = now()
        WHERE id = %s
        """,
        (contact_key, channel, row[0]),
    )
    return str(row[0]), (str(row[1]) if row[1] else None)


def upsert_for_contact(
    cur: PgCursor,
    *,
    business_id: str,
    contact_phone: str,
    channel: str = WHATSAPP,
    contact_display: str | None = None,
    activity_at: datetime | None = None,
    client_id: str | None = None,
) -> ConversationRef:
    """Find or create the conversation for a contact.

    Never fails on an existing row. ``activity_at`` moves last_message_at
    forward (never back). ``client_id`` is only set on conversations that
    have no client yet.

    Raises:
        ContactPhoneMissingError: If ``contact_phone`` has no digits.
    """
    contact_key = normalize_phone_loose(contact_phone)
    if not contact_key:
        raise ContactPhoneMissingError("contact phone is empty")

    cur.execute(
        """
        SELECT id, client_id FROM conversations
        WHERE business_id = %s AND channel = %s AND contact_key = %s
        FOR UPDATE
        """,
        (business_id, channel, contact_key),
    )
    row = cur.fetchone()
    if row is not None:
        existing: tuple[str, str | None] | None = (str(row[0]), str(row[1]) if row[1] else None)
    else:
        existing = _adopt_legacy(
            cur,
            business_id=business_id,
            channel=channel,
            contact_key=contact_key,
            raw_phone=contact_phone,
        )
    created = False
    if existing is None:
        # xmax = 0 only for rows inserted by this statement.
        cur.execute(
            """
            INSERT INTO conversations (business_id, channel, contact_key, contact_phone)
            VALUES (%s, %s, %s, %s)
            ON CONFLICT (business_id, channel, contact_key) DO UPDATE
            SET updated_at = now()
            RETURNING id, client_id, (xmax = 0)
            """,
            (business_id, channel, contact_key, contact_key),
        )
        row = cur.fetchone()
        conversation_id = str(row[0])
        current_client = str(row[1]) if row[1] else None
        created = bool(row[2])
    else:
        conversation_id, current_client = existing

    cur.execute(
        """
        UPDATE conversations
        SET contact_display = COALESCE(%s, contact_display),
            client_id = COALESCE(client_id, %s),
            last_message_at = CASE
                WHEN %s::timestamptz IS NULL THEN last_message_at
                ELSE GREATEST(COALESCE(last_message_at, %s::timestamptz), %s::timestamptz)
            END
        WHERE id = %s
        """,
        (contact_display, client_id, activity_at, activity_at, activity_at, conversation_id),
    )
    return ConversationRef(
        id=conversation_id,
        client_id=current_client or client_id,
        created=created,
    )


def find_for_contact(
    cur: PgCursor, *, business_id: str, contact_phone: str, channel: str = WHATSAPP
) -> ConversationRef | None:
    """Existing conversation for a phone (keyed or legacy). Never creates one."""
    contact_key = normalize_phone_loose(contact_phone)
    if not contact_key:
        return None
    cur.execute(
        """
        SELECT id, client_id FROM conversations
        WHERE business_id = %s
          AND ((channel = %s AND contact_key = %s)
               OR (contact_key IS NULL AND contact_phone = ANY(%s)))
        ORDER BY contact_key IS NULL, created_at
        LIMIT 1
        """,
        (business_id, channel, contact_key, phone_candidates(contact_phone)),
    )
    row = cur.fetchone()
    if row is None:
        return None
    return ConversationRef(id=str(row[0]), client_id=str(row[1]) if row[1] else None, created=False)


def link_existing_client(
    cur: PgCursor, *, business_id: str, conversation_id: str, contact_phone: str
) -> str | None:
    """Attach an already-existing client whose phone matches. Never creates one.

    Returns:
        The linked client id, or None if no client matched or one was already linked.
    """
    client = clients_repository.find_by_phones(
        cur, business_id=business_id, phones=phone_candidates(contact_phone)
    )
    if client is None:
        return None
    cur.execute(
        """
        UPDATE conversations
        SET client_id = %s, updated_at = now()
        WHERE id = %s AND business_id = %s AND client_id IS NULL
        """,
        (client["id"], conversation_id, business_id),
    )
    return client["id"] if cur.rowcount == 1 else None


def record_inbound(cur: PgCursor, *, conversation_id: str, at: datetime | None = None) -> None:
    """One more unread message; last_message_at moves forward only."""
    at = at or utc_now()
    cur.execute(
        """
        UPDATE conversations
        SET unread_count = unread_count + 1,
            last_message_at = GREATEST(COALESCE(last_message_at, %s), %s),
            updated_at = now()
        WHERE id = %s
        """,
        (at, at, conversation_id),
    )


def touch_last_message(cur: PgCursor, *, conversation_id: str, at: datetime | None = None) -> None:
    cur.execute(
        """
        UPDATE conversations
        SET last_message_at = %s, updated_at = now()
        WHERE id = %s
        """,
        (at or utc_now(), conversation_id),
    )


def mark_read(cur: PgCursor, *, business_id: str, conversation_id: str, last_message_id: str) -> None:
    cur.execute(
        """
        UPDATE conversations
        SET last_read_message_id = %s, unread_count = 0, updated_at = now()
        WHERE id = %s AND business_id = %s
        """,
        (last_message_id, conversation_id, business_id),
    )


def set_client(
    cur: PgCursor, *, business_id: str, conversation_id: str, client_id: str | None
) -> bool:
    """Link (or with None, unlink) a client. False if the conversation is not ours."""
    cur.execute(
        """
        UPDATE conversations
        SET client_id = %s, updated_at = now()
        WHERE id = %s AND business_id = %s
        """,
        (client_id, conversation_id, business_id),
    )
    return cur.rowcount == 1


def list_inbox(cur: PgCursor, *, business_id: str, limit: int = INBOX_PAGE_SIZE) -> list[dict[str, Any]]:
    """Most recent conversations with a preview of their last message."""
    cur.execute(
        f"""
        SELECT {_CONVERSATION_COLUMNS}, cl.name, lm.text, lm.direction, lm.status
        FROM conversations c
        LEFT JOIN clients cl ON cl.id = c.client_id
        LEFT JOIN LATERAL (
            SELECT text, direction, status
            FROM messages m
            WHERE m.conversation_id = c.id
            ORDER BY m.created_at DESC
            LIMIT 1
        ) lm ON true
        WHERE c.business_id = %s
        ORDER BY c.last_message_at DESC NULLS LAST, c.updated_at DESC
        LIMIT %s
        """,
        (business_id, limit),
    )
    rows = []
    for row in cur.fetchall():
        item = _row_to_conversation(row[:12])
        item.update(
            {
                "client_name": row[12],
                "last_text": (row[13] or "").strip(),
                "last_direction": row[14],
                "last_status": row[15],
            }
        )
        rows.append(item)
    return rows
