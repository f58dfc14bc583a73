"""WhatsApp connection settings for the selected business."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from booking.api.session import SessionContext, require_business
from booking.domain.phone import format_phone_for_display, normalize_phone_strict
from booking.domain.send_pipeline import NOT_CONNECTED_ERROR, credentials_for
from booking.infra import channel_accounts
from booking.infra.db import txn
from booking.infra.time import isoformat_or_none
from booking.observability.correlation import get_correlation_id
from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context
from booking.whatsapp.meta_sender import MetaApiError, send_text

router = APIRouter(tags=["whatsapp-settings"])

logger = get_logger(__name__)


def _account_to_dict(account: channel_accounts.ChannelAccount) -> dict[str, Any]:
    # Credentials never leave the server.
    return {
        "id": account.id,
        "channel": account.channel,
        "phoneNumberId": account.provider_account_id,
        "displayName": account.display_name,
        "displayNumber": account.display_number,
        "wabaId": account.config.get("wabaId"),
        "hasAccessToken": bool(account.config.get("accessToken")),
        "isActive": account.is_active,
        "createdAt": isoformat_or_none(account.created_at),
        "updatedAt": isoformat_or_none(account.updated_at),
    }


@router.get("/api/whatsapp/accounts")
def list_accounts(session: SessionContext = Depends(require_business)) -> dict:
    with txn() as cur:
        accounts = channel_accounts.list_for_business(cur, session.business_id)
    return {"ok": True, "items": [_account_to_dict(a) for a in accounts]}


class ConnectRequest(BaseModel):
    phoneNumberId: str = ""
    displayNumber: str = ""
    wabaId: str = ""
    accessToken: str | None = None


@router.post("/api/settings/whatsapp/connect")
def connect(
    req: ConnectRequest,
    session: SessionContext = Depends(require_business),
) -> dict:
    """Bind a Meta phone number to the business (one active number per business).

    Returns 409 when another business already owns the phone_number_id.
    """
    phone_number_id = req.phoneNumberId.strip()
    display_number = req.displayNumber.strip()
    waba_id = req.wabaId.strip()
    if not phone_number_id or not display_number or not waba_id:
        raise HTTPException(
            status_code=400, detail="phoneNumberId, displayNumber and wabaId are required"
        )
    if not phone_number_id.isdigit():
        raise HTTPException(status_code=400, detail="phoneNumberId must be numeric")

    try:
        with txn() as cur:
            account_id = channel_accounts.connect_whatsapp(
                cur,
                business_id=session.business_id,
                phone_number_id=phone_number_id,
                display_number=display_number,
                waba_id=waba_id,
                access_token=(req.accessToken or "").strip() or None,
            )
    except channel_accounts.ChannelConflictError as e:
        logger.warning(
            "whatsapp connect conflict",
            extra={"extra_fields": safe_log_context(business_id=session.business_id)},
        )
        raise HTTPException(status_code=409, detail=str(e))
    except RuntimeError as e:
        # CHANNEL_TOKEN_KEY missing while a token was supplied
        logger.error("whatsapp token could not be encrypted")
        raise HTTPException(status_code=500, detail=str(e))

    logger.info(
        "whatsapp connected",
        extra={
            "extra_fields": safe_log_context(
                business_id=session.business_id, account_id=account_id
            )
        },
    )
    return {"ok": True, "accountId": account_id}


@router.delete("/api/settings/whatsapp")
def disconnect(session: SessionContext = Depends(require_business)) -> dict:
    with txn() as cur:
        count = channel_accounts.disconnect_whatsapp(cur, session.business_id)
    logger.info(
        "whatsapp disconnected",
        extra={"extra_fields": safe_log_context(business_id=session.business_id, accounts=count)},
    )
    return {"ok": True, "disconnected": count}


class TestMessageRequest(BaseModel):
    to: str = ""
    text: str | None = None


@router.post("/api/settings/whatsapp/test")
def send_test_message(
    req: TestMessageRequest,
    session: SessionContext = Depends(require_business),
) -> dict:
    """Send a text straight through Meta, bypassing the outbox."""
    to_phone = normalize_phone_strict(req.to)
    if not to_phone:
        raise HTTPException(status_code=400, detail="Invalid phone")

    with txn() as cur:
        account = channel_accounts.get_active_for_business(cur, session.business_id)
    credentials = credentials_for(account)
    if credentials is None:
        raise HTTPException(status_code=400, detail=NOT_CONNECTED_ERROR)

    text = (req.text or "").strip() or "Test message from your booking inbox."
    try:
        provider_id = send_text(
            credentials=credentials,
            to_phone=to_phone,
            text=text,
            correlation_id=get_correlation_id(),
        )
    except MetaApiError as e:
        logger.warning(
            "whatsapp test message failed",
            extra={
                "extra_fields": safe_log_context(
                    business_id=session.business_id, error_code=e.code
                )
            },
        )
        raise HTTPException(status_code=400, detail=e.message)

    return {
        "ok": True,
        "providerMessageId": provider_id,
        "to": format_phone_for_display(to_phone),
    }
