"""Attribute an inbound webhook to the business that owns the addressed number."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from booking.infra.channel_accounts import ChannelAccount
from booking.whatsapp.meta_adapter import get_phone_metadata

from .phone import normalize_phone_loose

AccountLookup = Callable[[str], ChannelAccount | None]


class TenantResolutionError(Exception):
    """The payload cannot be attributed to a business.

    ``reason`` is a short machine-friendly code suitable for responses and logs.
    """

    def __init__(self, reason: str, phone_number_id: str | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.phone_number_id = phone_number_id


@dataclass(frozen=True)
class TenantResolution:
    business_id: str
    phone_number_id: str
    to_phone: str
    account: ChannelAccount


def resolve_tenant(payload: dict[str, Any], lookup: AccountLookup) -> TenantResolution:
    """Find the owning business for a Meta webhook payload.

    There is no default-business fallback: a payload for an unknown number
    is rejected rather than filed under the wrong tenant.

    Args:
        payload: Parsed webhook body.
        lookup: Returns the active channel account for a phone_number_id.

    Raises:
        TenantResolutionError: If phone_number_id is missing or not bound.
    """
    metadata = get_phone_metadata(payload)
    if not metadata.phone_number_id:
        raise TenantResolutionError("missing_phone_number_id")

    account = lookup(metadata.phone_number_id)
    if account is None:
        raise TenantResolutionError("unknown_phone_number_id", metadata.phone_number_id)

    to_phone = normalize_phone_loose(metadata.display_phone_number or account.display_number)
    return TenantResolution(
        business_id=account.business_id,
        phone_number_id=metadata.phone_number_id,
        to_phone=to_phone,
        account=account,
    )
