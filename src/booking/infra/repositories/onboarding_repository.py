"""Onboarding invitation tokens.

A token lets its holder select the business it was issued for. Tokens are
single use: redeeming deletes the row.
"""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from booking.infra.time import utc_now

TOKEN_TTL = timedelta(days=7)

# Redemption outcomes besides success.
INVALID = "INVALID"
BUSINESS_UNAVAILABLE = "BUSINESS_UNAVAILABLE"


def generate_token() -> str:
    return secrets.token_hex(32)


def create_token(cur: PgCursor, business_id: str, *, now: datetime | None = None) -> dict[str, Any]:
    token = generate_token()
    expires_at = (now or utc_now()) + TOKEN_TTL
    cur.execute(
        """
        INSERT INTO onboarding_tokens (business_id, token, expires_at)
        VALUES (%s, %s, %s)
        RETURNING id
        """,
        (business_id, token, expires_at),
    )
    return {"id": str(cur.fetchone()[0]), "token": token, "expires_at": expires_at}


def replace_token(cur: PgCursor, business_id: str) -> dict[str, Any]:
    """Invalidate every outstanding token of the business and issue a new one."""
    cur.execute("DELETE FROM onboarding_tokens WHERE business_id = %s", (business_id,))
    return create_token(cur, business_id)


def redeem(cur: PgCursor, token: str) -> tuple[str | None, str | None]:
    """Consume ``token``.

    Returns:
        (business_id, None) on success, or (None, reason) with reason
        INVALID (unknown or expired) or BUSINESS_UNAVAILABLE (deleted).
        A failed redemption leaves the token in place.
    """
    cur.execute(
        """
        SELECT t.id, t.business_id, t.expires_at, b.deleted_at
        FROM onboarding_tokens t
        JOIN businesses b ON b.id = t.business_id
        WHERE t.token = %s
        FOR UPDATE OF t
        """,
        (token,),
    )
    row = cur.fetchone()
    if row is None or row[2] < utc_now():
        return None, INVALID
    if row[3] is not None:
        return None, BUSINESS_UNAVAILABLE

    cur.execute("DELETE FROM onboarding_tokens WHERE id = %s", (row[0],))
    return str(row[1]), None
