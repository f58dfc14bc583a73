"""Value objects parsed out of Meta Cloud API webhook payloads."""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any


@dataclass(frozen=True)
class PhoneMetadata:
    """``value.metadata`` of a change: which business number was addressed."""

    phone_number_id: str | None
    display_phone_number: str | None


@dataclass(frozen=True)
class InboundMessage:
    """A customer message. ``from_phone`` and ``text`` are PII; never log them."""

    provider_message_id: str
    from_phone: str
    kind: str
    text: str | None
    timestamp: datetime | None
    contact_name: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StatusUpdate:
    """Delivery receipt for a message we sent."""

    provider_message_id: str
    status: str
    timestamp: datetime | None
    error_code: int | None = None
    error_title: str | None = None
