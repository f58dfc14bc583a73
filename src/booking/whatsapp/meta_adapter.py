"""Meta Cloud API webhook adapter: signature check and payload parsing.

Payload shape::

    {
      "object": "whatsapp_business_account",
      "entry": [{
        "changes": [{
          "field": "messages",
          "value": {
            "metadata": {"phone_number_id": "...", "display_phone_number": "..."},
            "contacts": [{"profile": {"name": "..."}, "wa_id": "..."}],
            "messages": [{"from": "...", "id": "wamid...", "timestamp": "...", "type": "text", ...}],
            "statuses": [{"id": "wamid...", "status": "delivered", "timestamp": "..."}]
          }
        }]
      }]
    }
"""

from __future__ import annotations

import hashlib
import hmac
from typing import Any, Iterator

from booking.infra.time import from_epoch_seconds

from .models import InboundMessage, PhoneMetadata, StatusUpdate

# Message types whose media object may carry a caption.
_CAPTIONED_TYPES = ("image", "video", "document")


class InvalidPayloadError(Exception):
    """Raised when a Meta payload does not have the expected shape."""


class SignatureVerificationError(Exception):
    """Raised when X-Hub-Signature-256 does not match the body."""


def verify_signature(payload_bytes: bytes, signature_header: str, app_secret: str) -> None:
    """Check Meta's ``sha256=<hex>`` HMAC of the raw body.

    Raises:
        SignatureVerificationError: If the header is missing, malformed or wrong.
    """
    if not signature_header:
        raise SignatureVerificationError("missing signature header")

    scheme, _, received = signature_header.partition("=")
    if scheme != "sha256" or not received:
        raise SignatureVerificationError("invalid signature format")

    computed = hmac.new(app_secret.encode("utf-8"), payload_bytes, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(computed, received):
        raise SignatureVerificationError("signature mismatch")


def _iter_values(payload: dict[str, Any]) -> Iterator[dict[str, Any]]:
    """Yield every ``changes[].value`` object across all entries."""
    entries = payload.get("entry")
    if not isinstance(entries, list):
        return
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        changes = entry.get("changes")
        if not isinstance(changes, list):
            continue
        for change in changes:
            if isinstance(change, dict) and isinstance(change.get("value"), dict):
                yield change["value"]


def get_event_type(payload: dict[str, Any]) -> str:
    try:
        field = payload["entry"][0]["changes"][0].get("field")
    except (IndexError, KeyError, TypeError, AttributeError):
        field = None
    return str(field) if field else "unknown"


def get_phone_metadata(payload: dict[str, Any]) -> PhoneMetadata:
    """First ``metadata`` block that names a phone_number_id."""
    for value in _iter_values(payload):
        metadata = value.get("metadata")
        if isinstance(metadata, dict) and metadata.get("phone_number_id"):
            display = metadata.get("display_phone_number")
            return PhoneMetadata(
                phone_number_id=str(metadata["phone_number_id"]),
                display_phone_number=str(display) if display else None,
            )
    return PhoneMetadata(phone_number_id=None, display_phone_number=None)


def _message_text(message: dict[str, Any]) -> str | None:
    kind = message.get("type")
    if kind == "text":
        body = (message.get("text") or {}).get("body")
        return str(body) if body is not None else None
    if kind in _CAPTIONED_TYPES:
        caption = (message.get(kind) or {}).get("caption")
        return str(caption) if caption else None
    if kind == "button":
        label = (message.get("button") or {}).get("text")
        return str(label) if label else None
    if kind == "interactive":
        interactive = message.get("interactive") or {}
        reply = interactive.get("button_reply") or interactive.get("list_reply") or {}
        title = reply.get("title")
        return str(title) if title else None
    return None


def _contact_name(value: dict[str, Any], wa_id: str) -> str | None:
    contacts = value.get("contacts")
    if not isinstance(contacts, list):
        return None
    for contact in contacts:
        if not isinstance(contact, dict):
            continue
        if contact.get("wa_id") not in (None, wa_id):
            continue
        name = (contact.get("profile") or {}).get("name")
        if name:
            return str(name)
    return None


def extract_inbound_message(payload: dict[str, Any]) -> InboundMessage | None:
    """First customer message in the payload, or None for status-only callbacks.

    Raises:
        InvalidPayloadError: If a message object is present but lacks id or sender.
    """
    for value in _iter_values(payload):
        messages = value.get("messages")
        if not isinstance(messages, list) or not messages:
            continue
        message = messages[0]
        if not isinstance(message, dict):
            raise InvalidPayloadError("message is not an object")

        message_id = message.get("id")
        if not message_id or not isinstance(message_id, str):
            raise InvalidPayloadError("missing or invalid message id")
        sender = message.get("from")
        if not sender:
            raise InvalidPayloadError("missing sender phone number")

        return InboundMessage(
            provider_message_id=message_id,
            from_phone=str(sender),
            kind=str(message.get("type") or "unknown"),
            text=_message_text(message),
            timestamp=from_epoch_seconds(message.get("timestamp")),
            contact_name=_contact_name(value, str(sender)),
            raw=message,
        )
    return None


def extract_status_updates(payload: dict[str, Any]) -> list[StatusUpdate]:
    """All delivery receipts in the payload. Entries without an id are skipped."""
    updates: list[StatusUpdate] = []
    for value in _iter_values(payload):
        statuses = value.get("statuses")
        if not isinstance(statuses, list):
            continue
        for item in statuses:
            if not isinstance(item, dict) or not item.get("id") or not item.get("status"):
                continue
            error_code: int | None = None
            error_title: str | None = None
            errors = item.get("errors")
            if isinstance(errors, list) and errors and isinstance(errors[0], dict):
                raw_code = errors[0].get("code")
                error_code = raw_code if isinstance(raw_code, int) else None
                error_title = errors[0].get("title") or errors[0].get("message")
            updates.append(
                StatusUpdate(
                    provider_message_id=str(item["id"]),
                    status=str(item["status"]).lower(),
                    timestamp=from_epoch_seconds(item.get("timestamp")),
                    error_code=error_code,
                    error_title=error_title,
                )
            )
    return updates
