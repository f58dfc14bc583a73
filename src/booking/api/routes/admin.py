"""Admin endpoints: businesses, onboarding links, outbox retry, global metrics.

Every route except login requires the admin cookie.
"""

from __future__ import annotations

import os
from typing import Any
from urllib.parse import urlencode
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from booking.api.routes.auth import passwords_match, safe_next
from booking.api.session import (
    ADMIN_MAX_AGE,
    COOKIE_BID,
    SessionContext,
    clear_cookie,
    grant_admin,
    require_admin,
    select_business,
)
from booking.domain.admin_metrics import get_global_metrics
from booking.domain.outbox import OutboxNotFoundError, OutboxNotRetryableError, retry_outbox
from booking.infra.db import txn
from booking.infra.repositories import businesses_repository, onboarding_repository
from booking.infra.time import isoformat_or_none
from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context

router = APIRouter(prefix="/api/admin", tags=["admin"])

logger = get_logger(__name__)

DELETE_CONFIRMATION = "ELIMINAR"
NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 80


def onboarding_url(token: str, next_path: str | None = None) -> str:
    """Relative invitation link; ``next`` is kept only for app paths."""
    params = {"token": token}
    target = safe_next(next_path, prefix="/app")
    if target:
        params["next"] = target
    return f"/onboarding?{urlencode(params)}"


def _business_to_dict(item: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": item["id"],
        "name": item["name"],
        "createdAt": isoformat_or_none(item["created_at"]),
        "deletedAt": isoformat_or_none(item["deleted_at"]),
        "deleted": item["deleted_at"] is not None,
    }


# ---------------------------------------------------------------------------
# Login
# ---------------------------------------------------------------------------


class AdminLoginRequest(BaseModel):
    password: str = ""


@router.post("/login")
def admin_login(req: AdminLoginRequest) -> JSONResponse:
    expected = os.environ.get("ADMIN_PASSWORD", "")
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_PASSWORD not configured")
    if not passwords_match(req.password, expected):
        logger.info("admin login rejected")
        raise HTTPException(status_code=401, detail="Incorrect password")

    response = JSONResponse({"ok": True})
    grant_admin(response, max_age=ADMIN_MAX_AGE)
    logger.info("admin login")
    return response


# ---------------------------------------------------------------------------
# Businesses
# ---------------------------------------------------------------------------


@router.get("/businesses")
def list_businesses(session: SessionContext = Depends(require_admin)) -> dict:
    with txn() as cur:
        items = businesses_repository.list_businesses(cur)
    return {"ok": True, "items": [_business_to_dict(item) for item in items]}


class CreateBusinessRequest(BaseModel):
    name: str = ""
    next: str | None = None


@router.post("/businesses")
def create_business(
    req: CreateBusinessRequest,
    session: SessionContext = Depends(require_admin),
) -> dict:
    """Create a business together with its first onboarding link."""
    name = req.name.strip()
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        raise HTTPException(
            status_code=400,
            detail=f"Name must be {NAME_MIN_LENGTH}-{NAME_MAX_LENGTH} characters",
        )

    with txn() as cur:
        business = businesses_repository.create_business(cur, name)
        token = onboarding_repository.create_token(cur, business["id"])

    logger.info(
        "admin created business",
        extra={"extra_fields": safe_log_context(business_id=business["id"])},
    )
    return {
        "ok": True,
        "business": _business_to_dict(business),
        "onboardingUrl": onboarding_url(token["token"], req.next),
        "expiresAt": isoformat_or_none(token["expires_at"]),
    }


class DeleteBusinessRequest(BaseModel):
    confirm: str = ""


@router.post("/businesses/{business_id}/delete")
def delete_business(
    business_id: UUID,
    req: DeleteBusinessRequest,
    session: SessionContext = Depends(require_admin),
) -> JSONResponse:
    """Soft delete. Clears the business cookie when it points at this business."""
    if req.confirm.strip().upper() != DELETE_CONFIRMATION:
        raise HTTPException(status_code=400, detail=f"Type {DELETE_CONFIRMATION} to confirm")

    bid = str(business_id)
    with txn() as cur:
        deleted = businesses_repository.soft_delete(cur, bid)
        if not deleted and not businesses_repository.exists(cur, bid, include_deleted=True):
            raise HTTPException(status_code=404, detail="Business not found")

    logger.info(
        "admin deleted business",
        extra={"extra_fields": safe_log_context(business_id=bid, changed=deleted)},
    )
    response = JSONResponse({"ok": True, "deleted": True})
    if session.business_id == bid:
        clear_cookie(response, COOKIE_BID)
    return response


@router.post("/businesses/{business_id}/restore")
def restore_business(
    business_id: UUID,
    session: SessionContext = Depends(require_admin),
) -> dict:
    bid = str(business_id)
    with txn() as cur:
        restored = businesses_repository.restore(cur, bid)
    if not restored:
        raise HTTPException(status_code=404, detail="Business not found")
    logger.info(
        "admin restored business",
        extra={"extra_fields": safe_log_context(business_id=bid)},
    )
    return {"ok": True}


@router.post("/businesses/{business_id}/impersonate")
def impersonate_business(
    business_id: UUID,
    session: SessionContext = Depends(require_admin),
) -> JSONResponse:
    """Select a live business as the admin's current one."""
    bid = str(business_id)
    with txn() as cur:
        live = businesses_repository.exists(cur, bid)
    if not live:
        raise HTTPException(status_code=404, detail="Business not found")

    response = JSONResponse({"ok": True, "businessId": bid, "redirectTo": "/app/inbox"})
    select_business(response, bid)
    logger.info(
        "admin impersonating business",
        extra={"extra_fields": safe_log_context(business_id=bid)},
    )
    return response


@router.post("/businesses/{business_id}/onboarding-token")
def regenerate_onboarding_token(
    business_id: UUID,
    session: SessionContext = Depends(require_admin),
) -> dict:
    """Issue a fresh onboarding link; earlier links stop working."""
    bid = str(business_id)
    with txn() as cur:
        if not businesses_repository.exists(cur, bid):
            raise HTTPException(status_code=404, detail="Business not found")
        token = onboarding_repository.replace_token(cur, bid)
    return {
        "ok": True,
        "onboardingUrl": onboarding_url(token["token"]),
        "expiresAt": isoformat_or_none(token["expires_at"]),
    }


# ---------------------------------------------------------------------------
# Outbox & metrics
# ---------------------------------------------------------------------------


class RetryOutboxRequest(BaseModel):
    id: UUID


@router.post("/outbox/retry")
def retry_outbox_item(
    req: RetryOutboxRequest,
    session: SessionContext = Depends(require_admin),
) -> dict:
    try:
        row = retry_outbox(str(req.id))
    except OutboxNotFoundError:
        raise HTTPException(status_code=404, detail="Outbox item not found")
    except OutboxNotRetryableError as e:
        raise HTTPException(
            status_code=400, detail=f"Only FAILED items can be retried (is {e.status})"
        )
    return {"ok": True, "id": row["id"], "status": row["status"]}


@router.get("/global")
def global_metrics(
    range_value: str | None = Query(None, alias="range"),
    session: SessionContext = Depends(require_admin),
) -> dict:
    return get_global_metrics(range_value)
