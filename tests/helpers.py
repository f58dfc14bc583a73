"""Payload builders shared by tests."""

from __future__ import annotations

PHONE_NUMBER_ID = "106540352242922"
CUSTOMER_WA_ID = "5215512345678"


def meta_message_payload(
    *,
    message_id: str = "wamid.IN1",
    sender: str = CUSTOMER_WA_ID,
    text: str = "Hola, quiero una cita",
    phone_number_id: str = PHONE_NUMBER_ID,
    display_phone_number: str = "15550001111",
    contact_name: str | None = "Ana",
    timestamp: str = "1760000000",
) -> dict:
    value: dict = {
        "messaging_product": "whatsapp",
        "metadata": {
            "display_phone_number": display_phone_number,
            "phone_number_id": phone_number_id,
        },
        "messages": [
            {
                "from": sender,
                "id": message_id,
                "timestamp": timestamp,
                "type": "text",
                "text": {"body": text},
            }
        ],
    }
    if contact_name:
        value["contacts"] = [{"profile": {"name": contact_name}, "wa_id": sender}]
    return {
        "object": "whatsapp_business_account",
        "entry": [{"id": "WABA", "changes": [{"field": "messages", "value": value}]}],
    }


def meta_status_payload(
    *statuses: tuple[str, str],
    phone_number_id: str = PHONE_NUMBER_ID,
    timestamp: str = "1760000100",
) -> dict:
    return {
        "object": "whatsapp_business_account",
        "entry": [
            {
                "id": "WABA",
                "changes": [
                    {
                        "field": "messages",
                        "value": {
                            "messaging_product": "whatsapp",
                            "metadata": {"phone_number_id": phone_number_id},
                            "statuses": [
                                {"id": wamid, "status": status, "timestamp": timestamp}
                                for wamid, status in statuses
                            ],
                        },
                    }
                ],
            }
        ],
    }


SESSION_SECRET = "test-session-secret-with-enough-length"
BUSINESS_ID = "11111111-1111-1111-1111-111111111111"
OTHER_BUSINESS_ID = "33333333-3333-3333-3333-333333333333"


def session_cookies(
    *, gate: bool = True, admin: bool = False, business_id: str | None = None
) -> dict:
    """Signed cookie values as the login endpoints would set them. Needs SESSION_SECRET."""
    from booking.api import session

    cookies = {}
    if gate:
        cookies[session.COOKIE_GATE] = session.encode_cookie("gate", max_age=3600)
    if admin:
        cookies[session.COOKIE_ADMIN] = session.encode_cookie("admin", max_age=3600)
    if business_id:
        cookies[session.COOKIE_BID] = session.encode_cookie(
            "bid", max_age=3600, subject=business_id
        )
    return cookies
