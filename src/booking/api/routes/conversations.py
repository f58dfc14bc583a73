"""Inbox endpoints: conversation list, message timeline, read marks, linking."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from booking.api.session import SessionContext, require_business
from booking.domain import appointments, conversations
from booking.domain.phone import format_phone_for_display, normalize_phone_loose
from booking.infra.db import txn
from booking.infra.repositories import clients_repository, messages_repository
from booking.infra.time import isoformat_or_none, parse_iso_datetime
from booking.observability.logging import get_logger

router = APIRouter(prefix="/api/conversations", tags=["conversations"])

logger = get_logger(__name__)


def _conversation_to_dict(item: dict[str, Any]) -> dict[str, Any]:
    phone = item["contact_key"] or item["contact_phone"]
    return {
        "id": item["id"],
        "channel": item["channel"],
        "contactKey": item["contact_key"],
        "contactPhone": phone,
        "contactPhoneDisplay": format_phone_for_display(phone),
        "contactDisplay": item["contact_display"],
        "clientId": item["client_id"],
        "clientName": item.get("client_name"),
        "lastMessageAt": isoformat_or_none(item["last_message_at"]),
        "unreadCount": item["unread_count"],
        "lastMessage": item.get("last_text") or None,
        "lastDirection": item.get("last_direction"),
        "lastStatus": item.get("last_status"),
    }


def _message_to_dict(item: dict[str, Any]) -> dict[str, Any]:
    payload = item["payload"] or {}
    return {
        "id": item["id"],
        "direction": item["direction"],
        "text": item["text"],
        "status": item["status"],
        "createdAt": isoformat_or_none(item["created_at"]),
        "updatedAt": isoformat_or_none(item["updated_at"]),
        "deliveredAt": isoformat_or_none(item["delivered_at"]),
        "readAt": isoformat_or_none(item["read_at"]),
        "usedTemplate": bool(payload.get("usedTemplate")) if isinstance(payload, dict) else False,
        "error": payload.get("error") if isinstance(payload, dict) else None,
    }


@router.get("")
def list_conversations(session: SessionContext = Depends(require_business)) -> dict:
    with txn() as cur:
        items = conversations.list_inbox(cur, business_id=session.business_id)
    return {"ok": True, "items": [_conversation_to_dict(item) for item in items]}


@router.get("/{conversation_id}/messages")
def list_conversation_messages(
    conversation_id: UUID,
    after: UUID | None = Query(None),
    since: str | None = Query(None),
    session: SessionContext = Depends(require_business),
) -> dict:
    """Timeline page, oldest first. ``after`` is an exclusive message cursor;
    ``since`` also returns outbound messages whose status changed after it."""
    since_at = None
    if since:
        try:
            since_at = parse_iso_datetime(since)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid since")

    cid = str(conversation_id)
    with txn() as cur:
        if conversations.get_conversation(cur, business_id=session.business_id, conversation_id=cid) is None:
            raise HTTPException(status_code=404, detail="Conversation not found")
        if after and not messages_repository.belongs_to_conversation(
            cur, business_id=session.business_id, conversation_id=cid, message_id=str(after)
        ):
            raise HTTPException(status_code=400, detail="Invalid cursor")
        items = messages_repository.list_messages(
            cur,
            business_id=session.business_id,
            conversation_id=cid,
            after_id=str(after) if after else None,
        )
        updates = (
            messages_repository.list_outbound_updates(
                cur, business_id=session.business_id, conversation_id=cid, since=since_at
            )
            if since_at
            else []
        )

    return {
        "ok": True,
        "items": [_message_to_dict(item) for item in items],
        "updates": [_message_to_dict(item) for item in updates],
        "nextCursor": items[-1]["id"] if items else (str(after) if after else None),
    }


class ReadRequest(BaseModel):
    lastMessageId: UUID


@router.post("/{conversation_id}/read")
def mark_conversation_read(
    conversation_id: UUID,
    req: ReadRequest,
    session: SessionContext = Depends(require_business),
) -> dict:
    cid = str(conversation_id)
    with txn() as cur:
        if not messages_repository.belongs_to_conversation(
            cur, business_id=session.business_id, conversation_id=cid, message_id=str(req.lastMessageId)
        ):
            raise HTTPException(status_code=404, detail="Message not found")
        conversations.mark_read(
            cur,
            business_id=session.business_id,
            conversation_id=cid,
            last_message_id=str(req.lastMessageId),
        )
    return {"ok": True}


class LinkClientRequest(BaseModel):
    clientId: UUID | None = None


@router.post("/{conversation_id}/link-client")
def link_client(
    conversation_id: UUID,
    req: LinkClientRequest,
    session: SessionContext = Depends(require_business),
) -> dict:
    """Attach a client to the conversation, or detach with ``clientId: null``."""
    client_id = str(req.clientId) if req.clientId else None
    with txn() as cur:
        if client_id and clients_repository.get_client(
            cur, business_id=session.business_id, client_id=client_id
        ) is None:
            raise HTTPException(status_code=404, detail="Client not found")
        linked = conversations.set_client(
            cur,
            business_id=session.business_id,
            conversation_id=str(conversation_id),
            client_id=client_id,
        )
    if not linked:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"ok": True, "clientId": client_id}


class StartConversationRequest(BaseModel):
    clientId: UUID
    channel: str = conversations.WHATSAPP


@router.post("/start")
def start_conversation(
    req: StartConversationRequest,
    session: SessionContext = Depends(require_business),
) -> dict:
    """Open (or reuse) the conversation with a client."""
    channel = (req.channel or conversations.WHATSAPP).strip().lower()
    with txn() as cur:
        client = clients_repository.get_client(
            cur, business_id=session.business_id, client_id=str(req.clientId)
        )
        if client is None:
            raise HTTPException(status_code=404, detail="Client not found")
        if not normalize_phone_loose(client["phone"]):
            raise HTTPException(status_code=400, detail="Invalid client phone")
        ref = conversations.upsert_for_contact(
            cur,
            business_id=session.business_id,
            contact_phone=client["phone"],
            channel=channel,
            contact_display=client["name"] or client["phone"],
            client_id=client["id"],
        )
    return {"ok": True, "conversationId": ref.id, "created": ref.created}


class EnsureConversationRequest(BaseModel):
    appointmentId: UUID


@router.post("/ensure")
def ensure_conversation(
    req: EnsureConversationRequest,
    session: SessionContext = Depends(require_business),
) -> dict:
    """Conversation for an appointment's client; links it to the appointment."""
    try:
        conversation_id = appointments.ensure_conversation(
            business_id=session.business_id, appointment_id=str(req.appointmentId)
        )
    except appointments.AppointmentNotFoundError:
        raise HTTPException(status_code=404, detail="Appointment not found")
    except conversations.ContactPhoneMissingError:
        raise HTTPException(status_code=400, detail="Appointment client has no valid phone")
    return {"ok": True, "conversationId": conversation_id}
