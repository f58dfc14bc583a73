"""Outbound send pipeline: outbox row first, provider call second.

The outbox row and the QUEUED message are committed (and the row leased)
before Meta is called, so every attempt leaves a durable record even if
the process dies mid-call. No database transaction is held open across
the provider call.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from psycopg2.extensions import cursor as PgCursor

from booking.infra import channel_accounts
from booking.infra.channel_accounts import FallbackTemplate
from booking.infra.db import txn
from booking.infra.repositories import messages_repository, outbox_repository
from booking.infra.token_vault import TokenVaultError
from booking.observability.correlation import get_correlation_id
from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context
from booking.whatsapp.meta_sender import MetaApiError, MetaCredentials, send_template, send_text

from . import conversations

logger = get_logger(__name__)

PROVIDER = "whatsapp"

# Meta error codes for "outside the 24h customer service window".
SESSION_EXPIRED_CODES = frozenset({131047, 131026, 470})
_SESSION_HINTS = ("template", "24", "hours", "session")

NOT_CONNECTED_ERROR = "WhatsApp not connected"


class EmptyMessageError(ValueError):
    """Outbound text is empty after trimming."""


def is_session_expired_error(exc: MetaApiError) -> bool:
    """True when Meta refused free-form text because the session window closed.

    Transient failures (timeouts, 5xx, open circuit) never qualify, whatever
    their message says.
    """
    if exc.transient:
        return False
    if exc.code in SESSION_EXPIRED_CODES:
        return True
    message = (exc.message or "").lower()
    return any(hint in message for hint in _SESSION_HINTS)


# ---------------------------------------------------------------------------
# Provider delivery
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DeliveryOutcome:
    ok: bool
    provider_message_id: str | None = None
    used_template: bool = False
    template: str | None = None
    error_message: str | None = None
    error_code: int | None = None
    transient: bool = False


def deliver(
    *,
    credentials: MetaCredentials | None,
    to_phone: str,
    text: str,
    template: FallbackTemplate | None,
) -> DeliveryOutcome:
    """Send ``text``; on a session-window error try ``template`` exactly once.

    Pass ``template=None`` to disable the fallback. Never raises for
    provider failures; they come back as a failed outcome.
    """
    if credentials is None:
        return DeliveryOutcome(ok=False, error_message=NOT_CONNECTED_ERROR)

    correlation_id = get_correlation_id()
    try:
        provider_id = send_text(
            credentials=credentials, to_phone=to_phone, text=text, correlation_id=correlation_id
        )
        return DeliveryOutcome(ok=True, provider_message_id=provider_id)
    except MetaApiError as exc:
        if template is None or not is_session_expired_error(exc):
            return DeliveryOutcome(
                ok=False, error_message=exc.message, error_code=exc.code, transient=exc.transient
            )

    try:
        provider_id = send_template(
            credentials=credentials,
            to_phone=to_phone,
            template_name=template.name,
            language_code=template.language,
            correlation_id=correlation_id,
            max_retries=0,
        )
    except MetaApiError as exc:
        return DeliveryOutcome(
            ok=False,
            used_template=True,
            template=template.name,
            error_message=exc.message,
            error_code=exc.code,
            transient=exc.transient,
        )
    return DeliveryOutcome(
        ok=True, provider_message_id=provider_id, used_template=True, template=template.name
    )


def credentials_for(account: channel_accounts.ChannelAccount | None) -> MetaCredentials | None:
    """Sending credentials, or None when the account is missing or unusable."""
    try:
        return channel_accounts.resolve_meta_credentials(account)
    except (TokenVaultError, RuntimeError):
        logger.error(
            "whatsapp credentials could not be loaded",
            extra={"extra_fields": safe_log_context(account_id=account.id if account else None)},
        )
        return None


def record_outcome(
    cur: PgCursor, *, outbox_id: str, message_id: str | None, outcome: DeliveryOutcome
) -> None:
    """Write a final SENT/FAILED outcome to both the outbox row and its message."""
    if outcome.ok:
        outbox_repository.mark_sent(cur, outbox_id)
        if message_id:
            messages_repository.mark_outbound_sent(
                cur,
                message_id,
                provider_message_id=outcome.provider_message_id,
                used_template=outcome.used_template,
                template=outcome.template,
            )
        return

    error = outcome.error_message or "send failed"
    outbox_repository.mark_failed(cur, outbox_id, error)
    if message_id:
        messages_repository.mark_outbound_failed(
            cur,
            message_id,
            error_message=error,
            error_code=outcome.error_code,
            used_template=outcome.used_template,
            template=outcome.template,
        )


# ---------------------------------------------------------------------------
# Conversation send
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SendResult:
    outbox_id: str
    message_id: str
    outcome: DeliveryOutcome

    def to_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "ok": self.outcome.ok,
            "outboxId": self.outbox_id,
            "messageId": self.message_id,
            "status": outbox_repository.SENT if self.outcome.ok else outbox_repository.FAILED,
            "usedTemplate": self.outcome.used_template,
        }
        if not self.outcome.ok:
            body["error"] = self.outcome.error_message
        return body


def send_conversation_message(*, business_id: str, conversation_id: str, text: str) -> SendResult:
    """Send ``text`` into a conversation of ``business_id``.

    Raises:
        EmptyMessageError: If ``text`` is blank.
        ConversationNotFoundError: If the conversation is not this business's.
        ContactPhoneMissingError: If the conversation has no usable phone.
    """
    body = (text or "").strip()
    if not body:
        raise EmptyMessageError("text is required")

    with txn() as cur:
        conversation = conversations.get_conversation(
            cur, business_id=business_id, conversation_id=conversation_id
        )
        if conversation is None:
            raise conversations.ConversationNotFoundError(conversation_id)
        to_phone = conversations.contact_phone_of(conversation)
        if not to_phone:
            raise conversations.ContactPhoneMissingError(conversation_id)

        account = channel_accounts.get_active_for_business(cur, business_id)
        outbox_id = outbox_repository.create_outbox(
            cur,
            business_id=business_id,
            conversation_id=conversation_id,
            contact_key=conversation["contact_key"],
            to_phone=to_phone,
            text=body,
            provider=PROVIDER,
            channel=conversation["channel"] or conversations.WHATSAPP,
        )
        message_id = messages_repository.insert_outbound(
            cur,
            business_id=business_id,
            conversation_id=conversation_id,
            provider=PROVIDER,
            from_phone=account.display_number if account else None,
            to_phone=to_phone,
            text=body,
            outbox_id=outbox_id,
        )
        conversations.touch_last_message(cur, conversation_id=conversation_id)
        # Leased before commit so the sweep never picks up a row we are sending.
        outbox_repository.lease_for_send(cur, outbox_id)

    outcome = deliver(
        credentials=credentials_for(account),
        to_phone=to_phone,
        text=body,
        template=channel_accounts.fallback_template(account),
    )

    with txn() as cur:
        record_outcome(cur, outbox_id=outbox_id, message_id=message_id, outcome=outcome)

    log_fields = safe_log_context(
        business_id=business_id,
        conversation_id=conversation_id,
        outbox_id=outbox_id,
        text_len=len(body),
        used_template=outcome.used_template,
        error_code=outcome.error_code,
    )
    if outcome.ok:
        logger.info("outbound message sent", extra={"extra_fields": log_fields})
    else:
        logger.warning("outbound message failed", extra={"extra_fields": log_fields})
    return SendResult(outbox_id=outbox_id, message_id=message_id, outcome=outcome)
