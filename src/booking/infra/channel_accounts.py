"""Channel accounts: which business owns which WhatsApp number.

``provider_account_id`` is Meta's phone_number_id. It is globally unique
per channel, so a webhook addressed to it can be attributed to exactly one
business. Credentials live in the ``config`` JSONB column; the access
token is stored encrypted (see ``token_vault``).
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from booking.whatsapp.meta_sender import MetaCredentials

from .token_vault import decrypt_token, encrypt_token

WHATSAPP = "whatsapp"

DEFAULT_FALLBACK_TEMPLATE = "hello_world"
DEFAULT_FALLBACK_TEMPLATE_LANG = "en_US"


class ChannelConflictError(Exception):
    """The phone_number_id is already bound to a different business."""


@dataclass(frozen=True)
class ChannelAccount:
    id: str
    business_id: str
    channel: str
    provider_account_id: str
    display_name: str | None
    display_number: str | None
    is_active: bool
    config: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class FallbackTemplate:
    name: str
    language: str


_COLUMNS = """
    ca.id, ca.business_id, ca.channel, ca.provider_account_id, ca.display_name,
    ca.display_number, ca.is_active, ca.config, ca.created_at, ca.updated_at
"""


def _row_to_account(row: tuple) -> ChannelAccount:
    return ChannelAccount(
        id=str(row[0]),
        business_id=str(row[1]),
        channel=row[2],
        provider_account_id=row[3],
        display_name=row[4],
        display_number=row[5],
        is_active=bool(row[6]),
        config=row[7] if isinstance(row[7], dict) else {},
        created_at=row[8],
        updated_at=row[9],
    )


def find_active_by_phone_number_id(cur: PgCursor, phone_number_id: str) -> ChannelAccount | None:
    """Active account for a phone_number_id whose business is not deleted."""
    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM channel_accounts ca
        JOIN businesses b ON b.id = ca.business_id
        WHERE ca.channel = %s
          AND ca.provider_account_id = %s
          AND ca.is_active
          AND b.deleted_at IS NULL
        """,
        (WHATSAPP, phone_number_id),
    )
    row = cur.fetchone()
    return _row_to_account(row) if row else None


def get_active_for_business(cur: PgCursor, business_id: str) -> ChannelAccount | None:
    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM channel_accounts ca
        WHERE ca.business_id = %s AND ca.channel = %s AND ca.is_active
        ORDER BY ca.updated_at DESC
        LIMIT 1
        """,
        (business_id, WHATSAPP),
    )
    row = cur.fetchone()
    return _row_to_account(row) if row else None


def list_for_business(cur: PgCursor, business_id: str) -> list[ChannelAccount]:
    cur.execute(
        f"""
        SELECT {_COLUMNS}
        FROM channel_accounts ca
        WHERE ca.business_id = %s AND ca.channel = %s
        ORDER BY ca.created_at DESC
        """,
        (business_id, WHATSAPP),
    )
    return [_row_to_account(row) for row in cur.fetchall()]


def connect_whatsapp(
    cur: PgCursor,
    *,
    business_id: str,
    phone_number_id: str,
    display_number: str,
    waba_id: str,
    access_token: str | None = None,
) -> str:
    """Bind a WhatsApp number to a business, or refresh an existing binding.

    The upsert refreshes a row already owned by ``business_id``, and takes
    over a row left behind by a disconnected or deleted business. A row
    still live for another business makes RETURNING come back empty.

    Returns:
        The channel account id.

    Raises:
        ChannelConflictError: If another business owns the phone_number_id.
    """
    config: dict[str, Any] = {"wabaId": waba_id, "phoneNumberId": phone_number_id}
    if access_token:
        config["accessToken"] = encrypt_token(access_token)

    cur.execute(
        """
        INSERT INTO channel_accounts (
            business_id, channel, provider_account_id, display_name, display_number, config
        )
        VALUES (%s, %s, %s, 'WhatsApp', %s, %s::jsonb)
        ON CONFLICT (channel, provider_account_id) DO UPDATE
        SET business_id = EXCLUDED.business_id,
            display_name = EXCLUDED.display_name,
            display_number = EXCLUDED.display_number,
            config = EXCLUDED.config,
            is_active = true,
            updated_at = now()
        WHERE channel_accounts.business_id = EXCLUDED.business_id
           OR NOT channel_accounts.is_active
           OR EXISTS (
               SELECT 1 FROM businesses b
               WHERE b.id = channel_accounts.business_id AND b.deleted_at IS NOT NULL
           )
        RETURNING id
        """,
        (business_id, WHATSAPP, phone_number_id, display_number, json.dumps(config)),
    )
    row = cur.fetchone()
    if row is None:
        raise ChannelConflictError(
            "phone_number_id is already connected to another business; disconnect it there first"
        )
    account_id = str(row[0])

    # One live WhatsApp number per business.
    cur.execute(
        """
        UPDATE channel_accounts
        SET is_active = false, updated_at = now()
        WHERE business_id = %s AND channel = %s AND id <> %s AND is_active
        """,
        (business_id, WHATSAPP, account_id),
    )
    return account_id


def disconnect_whatsapp(cur: PgCursor, business_id: str) -> int:
    """Deactivate the business's WhatsApp accounts and wipe stored credentials."""
    cur.execute(
        """
        UPDATE channel_accounts
        SET is_active = false, config = '{}'::jsonb, updated_at = now()
        WHERE business_id = %s AND channel = %s
        """,
        (business_id, WHATSAPP),
    )
    return cur.rowcount


def resolve_meta_credentials(account: ChannelAccount | None) -> MetaCredentials | None:
    """Credentials for sending as ``account``.

    The access token falls back to META_ACCESS_TOKEN (a system-user token
    shared by all numbers of the app). The phone_number_id never falls back:
    without an account there is nothing to send from.
    """
    if account is None:
        return None
    phone_number_id = account.config.get("phoneNumberId") or account.provider_account_id
    stored = account.config.get("accessToken")
    access_token = decrypt_token(stored) if stored else os.environ.get("META_ACCESS_TOKEN", "")
    if not phone_number_id or not access_token:
        return None
    return MetaCredentials(phone_number_id=str(phone_number_id), access_token=access_token)


def fallback_template(account: ChannelAccount | None) -> FallbackTemplate:
    """Template used when the 24h session window has closed."""
    config = account.config if account else {}
    return FallbackTemplate(
        name=config.get("fallbackTemplate")
        or os.environ.get("META_FALLBACK_TEMPLATE", DEFAULT_FALLBACK_TEMPLATE),
        language=config.get("fallbackTemplateLang")
        or os.environ.get("META_FALLBACK_TEMPLATE_LANG", DEFAULT_FALLBACK_TEMPLATE_LANG),
    )
