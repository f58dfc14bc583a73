"""WhatsApp webhook ingestion.

Per callback:

1. Attribute the payload to a business (fail closed, see ``tenants``).
2. Commit an audit row in RECEIVED before touching anything else.
3. In one transaction: apply delivery receipts, store at most one inbound
   message, bump the conversation, and mark the audit row PROCESSED.
4. If step 3 raises, it rolls back as a whole and the audit row is marked
   FAILED in a separate transaction. The caller answers 500 so Meta
   retries; the retry is absorbed by message dedup.

A message object without id or sender cannot succeed on redelivery: its
receipts are still applied, the audit row is marked FAILED in the same
transaction, and the callback is acknowledged.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from booking.infra import channel_accounts
from booking.infra.db import txn
from booking.infra.repositories import messages_repository, webhook_events_repository
from booking.infra.time import utc_now
from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context
from booking.whatsapp.meta_adapter import (
    InvalidPayloadError,
    extract_inbound_message,
    extract_status_updates,
    get_event_type,
)

from . import conversations
from .tenants import TenantResolution, resolve_tenant

logger = get_logger(__name__)

PROVIDER = "whatsapp"


class WebhookProcessingError(Exception):
    """Processing failed after the audit row was written (it is now FAILED)."""

    def __init__(self, event_id: str, cause: Exception) -> None:
        super().__init__(f"webhook event {event_id} failed: {type(cause).__name__}")
        self.event_id = event_id
        self.cause = cause


@dataclass(frozen=True)
class IngestionResult:
    event_id: str
    business_id: str
    status_updates: int = 0
    message_id: str | None = None
    conversation_id: str | None = None
    duplicate: bool = False
    has_message: bool = False
    rejected: str | None = None

    def to_response(self) -> dict[str, Any]:
        if self.rejected:
            return {
                "ok": True,
                "processed": False,
                "statusUpdates": self.status_updates,
                "reason": self.rejected,
            }
        if not self.has_message:
            return {"ok": True, "processed": False, "statusUpdates": self.status_updates}
        return {
            "ok": True,
            "processed": True,
            "duplicate": self.duplicate,
            "statusUpdates": self.status_updates,
        }


def _lookup_account(phone_number_id: str) -> channel_accounts.ChannelAccount | None:
    with txn() as cur:
        return channel_accounts.find_active_by_phone_number_id(cur, phone_number_id)


def process_event(
    cur: PgCursor,
    *,
    event_id: str,
    tenant: TenantResolution,
    payload: dict[str, Any],
) -> IngestionResult:
    """Apply one callback's receipts and message inside the caller's transaction."""
    applied = 0
    for update in extract_status_updates(payload):
        applied += messages_repository.apply_status_update(
            cur, business_id=tenant.business_id, provider=PROVIDER, update=update
        )

    try:
        inbound = extract_inbound_message(payload)
    except InvalidPayloadError as exc:
        logger.warning(
            "whatsapp webhook message rejected",
            extra={
                "extra_fields": safe_log_context(
                    business_id=tenant.business_id, event_id=event_id, error=str(exc)
                )
            },
        )
        webhook_events_repository.mark_failed(cur, event_id, f"InvalidPayloadError: {exc}")
        return IngestionResult(
            event_id=event_id,
            business_id=tenant.business_id,
            status_updates=applied,
            rejected="invalid message",
        )
    if inbound is None:
        webhook_events_repository.mark_processed(cur, event_id)
        return IngestionResult(
            event_id=event_id, business_id=tenant.business_id, status_updates=applied
        )

    event_at = inbound.timestamp or utc_now()
    conversation = conversations.upsert_for_contact(
        cur,
        business_id=tenant.business_id,
        contact_phone=inbound.from_phone,
        contact_display=inbound.contact_name,
        activity_at=event_at,
    )
    if conversation.client_id is None:
        conversations.link_existing_client(
            cur,
            business_id=tenant.business_id,
            conversation_id=conversation.id,
            contact_phone=inbound.from_phone,
        )

    message_id = messages_repository.insert_inbound(
        cur,
        business_id=tenant.business_id,
        conversation_id=conversation.id,
        provider=PROVIDER,
        provider_message_id=inbound.provider_message_id,
        from_phone=inbound.from_phone,
        to_phone=tenant.to_phone or tenant.phone_number_id,
        text=inbound.text,
        payload=inbound.raw,
        created_at=event_at,
    )
    if message_id is not None:
        conversations.record_inbound(cur, conversation_id=conversation.id, at=event_at)

    webhook_events_repository.mark_processed(cur, event_id)
    return IngestionResult(
        event_id=event_id,
        business_id=tenant.business_id,
        status_updates=applied,
        message_id=message_id,
        conversation_id=conversation.id,
        duplicate=message_id is None,
        has_message=True,
    )


def ingest(payload: dict[str, Any]) -> IngestionResult:
    """Run a parsed webhook body through the ingestion state machine.

    Raises:
        TenantResolutionError: If no business owns the addressed number.
            Nothing has been written in that case.
        WebhookProcessingError: If processing failed after the audit row
            was written.
    """
    tenant = resolve_tenant(payload, _lookup_account)

    with txn() as cur:
        event_id = webhook_events_repository.insert_received(
            cur,
            business_id=tenant.business_id,
            provider=PROVIDER,
            event_type=get_event_type(payload),
            payload=payload,
        )

    try:
        with txn() as cur:
            result = process_event(cur, event_id=event_id, tenant=tenant, payload=payload)
    except Exception as exc:
        logger.exception(
            "whatsapp webhook processing failed",
            extra={
                "extra_fields": safe_log_context(
                    business_id=tenant.business_id,
                    event_id=event_id,
                    error_type=type(exc).__name__,
                )
            },
        )
        with txn() as cur:
            webhook_events_repository.mark_failed(cur, event_id, f"{type(exc).__name__}: {exc}")
        raise WebhookProcessingError(event_id, exc) from exc

    logger.info(
        "whatsapp webhook processed",
        extra={
            "extra_fields": safe_log_context(
                business_id=tenant.business_id,
                event_id=event_id,
                status_updates=result.status_updates,
                has_message=result.has_message,
                duplicate=result.duplicate,
                rejected=result.rejected,
            )
        },
    )
    return result
