"""Agenda endpoints. Date/time fields are wall-clock values in BOOKING_TIMEZONE."""

from __future__ import annotations

from typing import Any
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, Query

from booking.api.session import SessionContext, require_business
from booking.domain import appointments
from booking.domain.conversations import ConversationNotFoundError

router = APIRouter(prefix="/api/appointments", tags=["appointments"])


@router.get("")
def list_appointments(
    date: str | None = Query(None),
    session: SessionContext = Depends(require_business),
) -> dict:
    try:
        items = appointments.list_for_day(business_id=session.business_id, day=date)
    except appointments.InvalidAppointmentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "items": items}


@router.post("")
def create_appointment(
    body: dict[str, Any] = Body(...),
    session: SessionContext = Depends(require_business),
) -> dict:
    try:
        appointment_id = appointments.create_appointment(business_id=session.business_id, body=body)
    except appointments.InvalidAppointmentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"ok": True, "id": appointment_id}


@router.post("/from-conversation")
def create_from_conversation(
    body: dict[str, Any] = Body(...),
    session: SessionContext = Depends(require_business),
) -> dict:
    try:
        appointment_id = appointments.create_from_conversation(
            business_id=session.business_id, body=body
        )
    except appointments.InvalidAppointmentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except ConversationNotFoundError:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"ok": True, "id": appointment_id}


@router.post("/{appointment_id}/cancel")
def cancel_appointment(
    appointment_id: UUID,
    session: SessionContext = Depends(require_business),
) -> dict:
    try:
        appointments.cancel(business_id=session.business_id, appointment_id=str(appointment_id))
    except appointments.AppointmentNotFoundError:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return {"ok": True}


@router.post("/{appointment_id}/reschedule")
def reschedule_appointment(
    appointment_id: UUID,
    body: dict[str, Any] = Body(...),
    session: SessionContext = Depends(require_business),
) -> dict:
    try:
        appointments.reschedule(
            business_id=session.business_id, appointment_id=str(appointment_id), body=body
        )
    except appointments.InvalidAppointmentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except appointments.AppointmentNotFoundError:
        raise HTTPException(status_code=404, detail="Appointment not found")
    except appointments.AppointmentCanceledError:
        raise HTTPException(status_code=400, detail="Appointment is canceled")
    return {"ok": True}


@router.patch("/{appointment_id}")
def update_appointment(
    appointment_id: UUID,
    body: dict[str, Any] = Body(...),
    session: SessionContext = Depends(require_business),
) -> dict:
    """``action``: cancel | status | (absent) edit date/time/duration/service/notes."""
    try:
        appointments.update(
            business_id=session.business_id, appointment_id=str(appointment_id), body=body
        )
    except appointments.InvalidAppointmentError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except appointments.AppointmentNotFoundError:
        raise HTTPException(status_code=404, detail="Appointment not found")
    return {"ok": True}
