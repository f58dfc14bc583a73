"""Appointments: validation of staff input and the agenda operations.

Dates and times arrive as wall-clock strings in the business timezone
(``YYYY-MM-DD`` and ``HH:MM``); they are converted to UTC once, here.
Validation happens before any write, so a rejected request changes nothing.
"""

from __future__ import annotations

import math
import re
from datetime import date, datetime, time, timedelta
from typing import Any

from booking.infra.db import txn
from booking.infra.repositories import appointments_repository, clients_repository
from booking.infra.time import (
    business_tz,
    local_day_bounds,
    local_to_utc,
    parse_iso_datetime,
    utc_now,
)
from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context

from . import conversations
from .phone import normalize_phone_loose

logger = get_logger(__name__)

DEFAULT_DURATION_MIN = 60
MAX_DURATION_MIN = 24 * 60

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_TIME_RE = re.compile(r"^\d{2}:\d{2}$")

# Statuses settable through PATCH action=status.
SETTABLE_STATUSES = frozenset(
    {
        appointments_repository.COMPLETED,
        appointments_repository.NO_SHOW,
        appointments_repository.SCHEDULED,
    }
)


class InvalidAppointmentError(ValueError):
    """Input rejected before anything was written."""


class AppointmentNotFoundError(Exception):
    pass


class AppointmentCanceledError(Exception):
    """A canceled appointment cannot be rescheduled through this path."""


def parse_date(value: Any) -> date:
    raw = str(value or "").strip()
    if not _DATE_RE.match(raw):
        raise InvalidAppointmentError("Invalid date")
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise InvalidAppointmentError("Invalid date") from exc


def parse_time(value: Any) -> time:
    raw = str(value or "").strip()
    if not _TIME_RE.match(raw):
        raise InvalidAppointmentError("Invalid time")
    hours, minutes = int(raw[:2]), int(raw[3:])
    if hours > 23 or minutes > 59:
        raise InvalidAppointmentError("Invalid time")
    return time(hours, minutes)


def parse_duration(value: Any, default: int | None = DEFAULT_DURATION_MIN) -> int:
    """Duration in minutes, 0 < d <= 1440."""
    if value is None or value == "":
        if default is None:
            raise InvalidAppointmentError("Invalid duration")
        value = default
    if isinstance(value, bool):
        raise InvalidAppointmentError("Invalid duration")
    try:
        minutes = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidAppointmentError("Invalid duration") from exc
    if not math.isfinite(minutes) or minutes <= 0 or minutes > MAX_DURATION_MIN:
        raise InvalidAppointmentError("Invalid duration")
    return math.ceil(minutes)


def schedule_window(
    date_value: Any,
    time_value: Any,
    duration_value: Any,
    *,
    default_duration: int | None = DEFAULT_DURATION_MIN,
) -> tuple[datetime, datetime]:
    """Validated (starts_at, ends_at) in UTC."""
    day = parse_date(date_value)
    at = parse_time(time_value)
    minutes = parse_duration(duration_value, default=default_duration)
    starts_at = local_to_utc(day, at)
    return starts_at, starts_at + timedelta(minutes=minutes)


def _clean(value: Any) -> str | None:
    text = str(value).strip() if value is not None else ""
    return text or None


def _serialize(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": item["id"],
        "startsAt": item["starts_at"].isoformat(),
        "endsAt": item["ends_at"].isoformat(),
        "service": item["service"],
        "notes": item["notes"],
        "status": item["status"],
        "conversationId": item["conversation_id"],
        "client": item.get("client"),
    }


def list_for_day(*, business_id: str, day: str | None) -> list[dict[str, Any]]:
    """Agenda for one local day (today in the business timezone by default)."""
    target = parse_date(day) if day else utc_now().astimezone(business_tz()).date()
    start, end = local_day_bounds(target)
    with txn() as cur:
        items = appointments_repository.list_between(cur, business_id=business_id, start=start, end=end)
    return [_serialize(item) for item in items]


def create_appointment(*, business_id: str, body: dict[str, Any]) -> str:
    """Book by phone: upsert the client, link its conversation, insert.

    Raises:
        InvalidAppointmentError: On a missing phone or a bad date/time/duration.
    """
    phone = normalize_phone_loose(str(body.get("phone") or ""))
    if not phone:
        raise InvalidAppointmentError("Phone is required")
    if not body.get("date") or not body.get("time"):
        raise InvalidAppointmentError("Date and time are required")
    starts_at, ends_at = schedule_window(body.get("date"), body.get("time"), body.get("durationMin"))

    with txn() as cur:
        client = clients_repository.upsert_client(
            cur, business_id=business_id, phone=phone, name=_clean(body.get("name"))
        )
        conversation = conversations.find_for_contact(cur, business_id=business_id, contact_phone=phone)
        if conversation is not None and conversation.client_id is None:
            conversations.set_client(
                cur, business_id=business_id, conversation_id=conversation.id, client_id=client["id"]
            )
        appointment_id = appointments_repository.insert_appointment(
            cur,
            business_id=business_id,
            client_id=client["id"],
            conversation_id=conversation.id if conversation else None,
            starts_at=starts_at,
            ends_at=ends_at,
            service=_clean(body.get("service")),
            notes=_clean(body.get("notes")),
        )

    logger.info(
        "appointment created",
        extra={"extra_fields": safe_log_context(business_id=business_id, appointment_id=appointment_id)},
    )
    return appointment_id


def create_from_conversation(*, business_id: str, body: dict[str, Any]) -> str:
    """Book from an open conversation; ISO instants, end defaults to +60 min.

    Raises:
        InvalidAppointmentError: On missing or invalid fields.
        ConversationNotFoundError: If the conversation is not this business's.
    """
    conversation_id = _clean(body.get("conversationId"))
    if not conversation_id:
        raise InvalidAppointmentError("conversationId is required")
    try:
        starts_at = parse_iso_datetime(str(body.get("startsAt") or ""))
    except ValueError as exc:
        raise InvalidAppointmentError("startsAt must be a valid ISO date") from exc
    ends_raw = body.get("endsAt")
    if ends_raw:
        try:
            ends_at = parse_iso_datetime(str(ends_raw))
        except ValueError as exc:
            raise InvalidAppointmentError("endsAt must be a valid ISO date") from exc
        if ends_at <= starts_at:
            raise InvalidAppointmentError("endsAt must be after startsAt")
    else:
        ends_at = starts_at + timedelta(minutes=DEFAULT_DURATION_MIN)

    with txn() as cur:
        conversation = conversations.get_conversation(
            cur, business_id=business_id, conversation_id=conversation_id
        )
        if conversation is None:
            raise conversations.ConversationNotFoundError(conversation_id)
        return appointments_repository.insert_appointment(
            cur,
            business_id=business_id,
            client_id=conversation["client_id"],
            conversation_id=conversation_id,
            starts_at=starts_at,
            ends_at=ends_at,
            service=_clean(body.get("service")),
            notes=_clean(body.get("notes")),
        )


def cancel(*, business_id: str, appointment_id: str) -> None:
    """Idempotent: canceling a canceled appointment is a no-op."""
    with txn() as cur:
        current = appointments_repository.get_for_update(
            cur, business_id=business_id, appointment_id=appointment_id
        )
        if current is None:
            raise AppointmentNotFoundError(appointment_id)
        if current["status"] != appointments_repository.CANCELED:
            appointments_repository.set_status(
                cur,
                business_id=business_id,
                appointment_id=appointment_id,
                status=appointments_repository.CANCELED,
            )


def reschedule(*, business_id: str, appointment_id: str, body: dict[str, Any]) -> None:
    """Move a live appointment.

    Raises:
        InvalidAppointmentError: On a bad date/time/duration.
        AppointmentNotFoundError: If the id is unknown for this business.
        AppointmentCanceledError: If it is canceled.
    """
    starts_at, ends_at = schedule_window(body.get("date"), body.get("time"), body.get("durationMin"))
    with txn() as cur:
        current = appointments_repository.get_for_update(
            cur, business_id=business_id, appointment_id=appointment_id
        )
        if current is None:
            raise AppointmentNotFoundError(appointment_id)
        if current["status"] == appointments_repository.CANCELED:
            raise AppointmentCanceledError(appointment_id)
        appointments_repository.reschedule(
            cur,
            business_id=business_id,
            appointment_id=appointment_id,
            starts_at=starts_at,
            ends_at=ends_at,
        )


def update(*, business_id: str, appointment_id: str, body: dict[str, Any]) -> None:
    """PATCH semantics: ``action`` is cancel, status, or (default) edit.

    An edit revives a canceled appointment back to SCHEDULED.
    """
    action = str(body.get("action") or "").strip()
    if action == "cancel":
        with txn() as cur:
            found = appointments_repository.set_status(
                cur,
                business_id=business_id,
                appointment_id=appointment_id,
                status=appointments_repository.CANCELED,
            )
        if not found:
            raise AppointmentNotFoundError(appointment_id)
        return

    if action == "status":
        status = str(body.get("status") or "").strip().upper()
        if status not in SETTABLE_STATUSES:
            raise InvalidAppointmentError("Invalid status")
        with txn() as cur:
            found = appointments_repository.set_status(
                cur, business_id=business_id, appointment_id=appointment_id, status=status
            )
        if not found:
            raise AppointmentNotFoundError(appointment_id)
        return

    starts_at, ends_at = schedule_window(
        body.get("date"), body.get("time"), body.get("durationMin"), default_duration=None
    )
    changes: dict[str, Any] = {}
    if "service" in body:
        changes["service"] = _clean(body.get("service"))
    if "notes" in body:
        changes["notes"] = _clean(body.get("notes"))
    with txn() as cur:
        found = appointments_repository.reschedule(
            cur,
            business_id=business_id,
            appointment_id=appointment_id,
            starts_at=starts_at,
            ends_at=ends_at,
            **changes,
        )
    if not found:
        raise AppointmentNotFoundError(appointment_id)


def ensure_conversation(*, business_id: str, appointment_id: str) -> str:
    """Conversation for the appointment's client, created if needed and linked.

    Raises:
        AppointmentNotFoundError: If the id is unknown for this business.
        ContactPhoneMissingError: If the client has no usable phone.
    """
    with txn() as cur:
        current = appointments_repository.get_for_update(
            cur, business_id=business_id, appointment_id=appointment_id
        )
        if current is None:
            raise AppointmentNotFoundError(appointment_id)
        if current["conversation_id"]:
            return current["conversation_id"]

        client = (
            clients_repository.get_client(cur, business_id=business_id, client_id=current["client_id"])
            if current["client_id"]
            else None
        )
        phone = normalize_phone_loose(client["phone"]) if client else ""
        if not phone:
            raise conversations.ContactPhoneMissingError(appointment_id)

        ref = conversations.upsert_for_contact(
            cur,
            business_id=business_id,
            contact_phone=phone,
            contact_display=client["name"] or phone,
            activity_at=utc_now(),
            client_id=client["id"],
        )
        appointments_repository.link_conversation(
            cur, business_id=business_id, appointment_id=appointment_id, conversation_id=ref.id
        )
        return ref.id
