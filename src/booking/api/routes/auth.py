"""Gate login, logout, business selection and onboarding redemption."""

from __future__ import annotations

import hmac
import os
from urllib.parse import quote

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse, RedirectResponse
from pydantic import BaseModel

from booking.api.session import (
    COOKIE_ADMIN,
    COOKIE_BID,
    COOKIE_GATE,
    SessionContext,
    clear_cookie,
    get_session,
    grant_admin,
    grant_gate,
    require_gate,
    select_business,
)
from booking.infra.db import txn
from booking.infra.repositories import businesses_repository, onboarding_repository
from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context

router = APIRouter(tags=["auth"])

logger = get_logger(__name__)

DEFAULT_APP_PATH = "/app/inbox"
DEFAULT_ADMIN_PATH = "/admin/businesses"
DEFAULT_ONBOARDING_NEXT = "/app/dashboard"


def passwords_match(given: str | None, expected: str | None) -> bool:
    if not given or not expected:
        return False
    return hmac.compare_digest(given.encode(), expected.encode())


def safe_next(raw: str | None, *, prefix: str) -> str | None:
    """Internal path under ``prefix``, or None. Protocol-relative URLs are rejected."""
    value = (raw or "").strip()
    if not value.startswith(prefix) or value.startswith("//"):
        return None
    return value


class LoginRequest(BaseModel):
    password: str = ""
    next: str | None = None


@router.post("/api/auth/login")
def login(req: LoginRequest) -> JSONResponse:
    """One password box for both gates: the admin password also opens the app."""
    app_password = os.environ.get("APP_GATE_PASSWORD", "")
    admin_password = os.environ.get("ADMIN_GATE_PASSWORD", "")
    if not app_password or not admin_password:
        raise HTTPException(status_code=500, detail="Access passwords not configured")

    is_admin = passwords_match(req.password, admin_password)
    is_app = passwords_match(req.password, app_password)
    if not is_admin and not is_app:
        logger.info("gate login rejected")
        raise HTTPException(status_code=401, detail="Incorrect password")

    if is_admin:
        redirect_to = safe_next(req.next, prefix="/admin") or DEFAULT_ADMIN_PATH
    else:
        redirect_to = safe_next(req.next, prefix="/app") or DEFAULT_APP_PATH

    response = JSONResponse(
        {"ok": True, "role": "admin" if is_admin else "app", "redirectTo": redirect_to}
    )
    grant_gate(response)
    if is_admin:
        grant_admin(response)
    else:
        clear_cookie(response, COOKIE_ADMIN)
    logger.info(
        "gate login",
        extra={"extra_fields": safe_log_context(role="admin" if is_admin else "app")},
    )
    return response


@router.post("/api/auth/logout")
def logout() -> JSONResponse:
    response = JSONResponse({"ok": True})
    for name in (COOKIE_GATE, COOKIE_ADMIN, COOKIE_BID):
        clear_cookie(response, name)
    return response


@router.post("/api/auth/leave-business")
def leave_business() -> JSONResponse:
    response = JSONResponse({"ok": True, "redirectTo": DEFAULT_ADMIN_PATH})
    clear_cookie(response, COOKIE_BID)
    return response


class CreateBusinessRequest(BaseModel):
    name: str = ""
    next: str | None = None


@router.post("/api/business/create")
def create_business(
    req: CreateBusinessRequest,
    session: SessionContext = Depends(require_gate),
) -> JSONResponse:
    """Self-serve business creation; the new business becomes the selected one."""
    name = req.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Business name is required")

    with txn() as cur:
        business = businesses_repository.create_business(cur, name)

    logger.info(
        "business created",
        extra={"extra_fields": safe_log_context(business_id=business["id"])},
    )
    response = JSONResponse(
        {
            "ok": True,
            "businessId": business["id"],
            "redirectTo": safe_next(req.next, prefix="/") or DEFAULT_APP_PATH,
        }
    )
    select_business(response, business["id"])
    return response


@router.get("/api/onboarding/accept")
def accept_onboarding(
    token: str = Query(""),
    next: str | None = Query(None),
    session: SessionContext = Depends(get_session),
) -> RedirectResponse:
    """Redeem an invitation link and select its business.

    Without a gate cookie the browser is sent to login first; the business
    stays selected.
    """
    token = token.strip()
    if not token:
        return RedirectResponse("/onboarding", status_code=307)

    with txn() as cur:
        business_id, failure = onboarding_repository.redeem(cur, token)

    if business_id is None:
        logger.info(
            "onboarding token rejected",
            extra={"extra_fields": safe_log_context(reason=failure)},
        )
        return RedirectResponse(f"/onboarding?token={failure}", status_code=307)

    target = safe_next(next, prefix="/app") or DEFAULT_ONBOARDING_NEXT
    if not session.has_gate:
        target = f"/login?next={quote(target, safe='')}"

    response = RedirectResponse(target, status_code=307)
    select_business(response, business_id)
    logger.info(
        "onboarding token redeemed",
        extra={"extra_fields": safe_log_context(business_id=business_id)},
    )
    return response
