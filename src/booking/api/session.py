"""Signed-cookie sessions.

Three cookies carry what a request may do:

- ``booking_gate``: passed the app password (may use the app).
- ``booking_admin``: passed an admin password.
- ``booking_bid``: the business currently selected.

Each value is an HS256 JWT signed with SESSION_SECRET, so a client cannot
forge or edit them. Route handlers turn cookies into a ``SessionContext``
through the dependencies below; domain code only ever sees that context.
"""

from __future__ import annotations

import os
import time
from dataclasses import dataclass

import jwt
from fastapi import Depends, HTTPException, Request, Response

from booking.infra.db import txn
from booking.infra.repositories import businesses_repository
from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context

logger = get_logger(__name__)

COOKIE_GATE = "booking_gate"
COOKIE_ADMIN = "booking_admin"
COOKIE_BID = "booking_bid"

GATE_MAX_AGE = 60 * 60 * 24 * 14
ADMIN_MAX_AGE = 60 * 60 * 24 * 7
BID_MAX_AGE = 60 * 60 * 24 * 30

_ALGORITHM = "HS256"


@dataclass(frozen=True)
class SessionContext:
    """What the current request is allowed to do."""

    business_id: str | None
    is_admin: bool
    has_gate: bool = False


def _get_secret() -> str | None:
    return os.environ.get("SESSION_SECRET") or None


def _cookie_secure() -> bool:
    return os.environ.get("COOKIE_SECURE", "").lower() in ("1", "true", "yes")


def encode_cookie(kind: str, *, max_age: int, subject: str | None = None) -> str:
    """Sign a cookie value.

    Raises:
        HTTPException: 500 if SESSION_SECRET is not configured.
    """
    secret = _get_secret()
    if not secret:
        logger.error("SESSION_SECRET not configured")
        raise HTTPException(status_code=500, detail="Session not configured")
    now = int(time.time())
    claims = {"kind": kind, "iat": now, "exp": now + max_age}
    if subject:
        claims["sub"] = subject
    return jwt.encode(claims, secret, algorithm=_ALGORITHM)


def decode_cookie(value: str | None, kind: str) -> dict | None:
    """Verified claims of a cookie value, or None if missing, forged or expired."""
    secret = _get_secret()
    if not value or not secret:
        return None
    try:
        claims = jwt.decode(value, secret, algorithms=[_ALGORITHM])
    except jwt.InvalidTokenError as e:
        logger.info(
            "session cookie rejected",
            extra={"extra_fields": safe_log_context(kind=kind, error_type=type(e).__name__)},
        )
        return None
    if claims.get("kind") != kind:
        return None
    return claims


def set_cookie(response: Response, name: str, value: str, max_age: int) -> None:
    response.set_cookie(
        key=name,
        value=value,
        max_age=max_age,
        path="/",
        httponly=True,
        samesite="lax",
        secure=_cookie_secure(),
    )


def clear_cookie(response: Response, name: str) -> None:
    response.delete_cookie(key=name, path="/", httponly=True, samesite="lax", secure=_cookie_secure())


def grant_gate(response: Response) -> None:
    set_cookie(response, COOKIE_GATE, encode_cookie("gate", max_age=GATE_MAX_AGE), GATE_MAX_AGE)


def grant_admin(response: Response, *, max_age: int = ADMIN_MAX_AGE) -> None:
    set_cookie(response, COOKIE_ADMIN, encode_cookie("admin", max_age=max_age), max_age)


def select_business(response: Response, business_id: str) -> None:
    value = encode_cookie("bid", max_age=BID_MAX_AGE, subject=business_id)
    set_cookie(response, COOKIE_BID, value, BID_MAX_AGE)


def get_session(request: Request) -> SessionContext:
    """Session from cookies. Never fails; missing cookies just grant nothing."""
    gate = decode_cookie(request.cookies.get(COOKIE_GATE), "gate") is not None
    admin = decode_cookie(request.cookies.get(COOKIE_ADMIN), "admin") is not None
    bid_claims = decode_cookie(request.cookies.get(COOKIE_BID), "bid")
    business_id = bid_claims.get("sub") if bid_claims else None
    return SessionContext(business_id=business_id, is_admin=admin, has_gate=gate or admin)


def _business_is_live(business_id: str) -> bool:
    with txn() as cur:
        return businesses_repository.exists(cur, business_id)


def require_gate(session: SessionContext = Depends(get_session)) -> SessionContext:
    if not session.has_gate:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return session


def require_business(session: SessionContext = Depends(require_gate)) -> SessionContext:
    """Gate plus a selected, non-deleted business."""
    if not session.business_id or not _business_is_live(session.business_id):
        raise HTTPException(status_code=401, detail="No business selected")
    return session


def require_admin(session: SessionContext = Depends(get_session)) -> SessionContext:
    if not session.is_admin:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return session
