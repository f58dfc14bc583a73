"""Client directory endpoints."""

from __future__ import annotations

from typing import Any, Literal

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from booking.api.session import SessionContext, require_business
from booking.domain.phone import format_phone_for_display, normalize_phone_strict, phone_candidates
from booking.infra.db import txn
from booking.infra.repositories import clients_repository
from booking.infra.time import isoformat_or_none
from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context

router = APIRouter(prefix="/api/clients", tags=["clients"])

logger = get_logger(__name__)


def _client_to_dict(item: dict[str, Any]) -> dict[str, Any]:
    data = {
        "id": item["id"],
        "name": item["name"],
        "phone": item["phone"],
        "phoneDisplay": format_phone_for_display(item["phone"]),
        "createdAt": isoformat_or_none(item["created_at"]),
        "updatedAt": isoformat_or_none(item["updated_at"]),
    }
    if "appointments_count" in item:
        data.update(
            {
                "appointmentsCount": item["appointments_count"],
                "conversationId": item["conversation_id"],
                "unreadCount": item["unread_count"],
                "lastMessageAt": isoformat_or_none(item["last_message_at"]),
            }
        )
    return data


@router.get("")
def list_clients(
    q: str = Query("", max_length=100),
    segment: Literal["all", "created7d", "inactive30d"] = Query("all"),
    session: SessionContext = Depends(require_business),
) -> dict:
    with txn() as cur:
        items = clients_repository.list_clients(
            cur, business_id=session.business_id, q=q.strip(), segment=segment
        )
    return {"ok": True, "items": [_client_to_dict(item) for item in items]}


class CreateClientRequest(BaseModel):
    phone: str = ""
    name: str | None = None


@router.post("")
def create_client(
    req: CreateClientRequest,
    session: SessionContext = Depends(require_business),
) -> Any:
    """Create a client. An existing phone answers 409 with that client."""
    phone = normalize_phone_strict(req.phone)
    if not phone:
        raise HTTPException(status_code=400, detail="Invalid phone")
    name = (req.name or "").strip() or None

    with txn() as cur:
        created = clients_repository.insert_client(
            cur, business_id=session.business_id, phone=phone, name=name
        )
        existing = None
        if created is None:
            existing = clients_repository.find_by_phones(
                cur, business_id=session.business_id, phones=phone_candidates(phone)
            )

    if created is None:
        logger.info(
            "client already exists",
            extra={"extra_fields": safe_log_context(business_id=session.business_id)},
        )
        return JSONResponse(
            {
                "ok": False,
                "error": "CLIENT_EXISTS",
                "client": _client_to_dict(existing) if existing else None,
            },
            status_code=409,
        )
    return {"ok": True, "client": _client_to_dict(created)}
