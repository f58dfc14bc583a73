"""Outbound messages from the inbox."""

from __future__ import annotations

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from booking.api.session import SessionContext, require_business
from booking.domain.conversations import ContactPhoneMissingError, ConversationNotFoundError
from booking.domain.send_pipeline import EmptyMessageError, send_conversation_message

router = APIRouter(prefix="/api/messages", tags=["messages"])


class SendMessageRequest(BaseModel):
    conversationId: UUID
    text: str = ""


@router.post("/send")
def send_message(
    req: SendMessageRequest,
    session: SessionContext = Depends(require_business),
) -> dict:
    """Send text into a conversation.

    Provider failures are still 200 with ``ok: false``: the outbox row and
    the FAILED message exist and can be retried.
    """
    try:
        result = send_conversation_message(
            business_id=session.business_id,
            conversation_id=str(req.conversationId),
            text=req.text,
        )
    except EmptyMessageError:
        raise HTTPException(status_code=400, detail="text is required")
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    except ContactPhoneMissingError:
        raise HTTPException(status_code=400, detail="Conversation has no contact phone")
    return result.to_response()
