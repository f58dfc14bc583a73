"""Who may call /tasks/*: Cloud Scheduler with a Google OIDC token.

For local runs, TASKS_OIDC_AUDIENCE=booking-tasks-local additionally accepts
the shared INTERNAL_TASK_SECRET in the X-Internal-Task-Secret header.
"""

from __future__ import annotations

import hmac
import os

import jwt
from fastapi import Request
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token

from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context

logger = get_logger(__name__)

LOCAL_DEV_AUDIENCE = "booking-tasks-local"
INTERNAL_SECRET_HEADER = "X-Internal-Task-Secret"

_BEARER_PREFIX = "Bearer "


def _extract_unverified_claim(token: str, claim: str) -> str | None:
    """Peek at a claim for diagnostics only. Never use for a decision."""
    try:
        claims = jwt.decode(token, options={"verify_signature": False})
    except jwt.DecodeError:
        return None
    if not isinstance(claims, dict) or claims.get(claim) is None:
        return None
    return str(claims[claim])


def extract_bearer_token(request: Request) -> str | None:
    header = request.headers.get("Authorization", "")
    if not header.startswith(_BEARER_PREFIX):
        return None
    return header[len(_BEARER_PREFIX):] or None


def _local_secret_matches(request: Request) -> bool:
    expected = os.environ.get("INTERNAL_TASK_SECRET", "")
    if not expected:
        return False
    given = request.headers.get(INTERNAL_SECRET_HEADER, "")
    return hmac.compare_digest(given.encode(), expected.encode())


def verify_task_oidc(token: str) -> bool:
    """True when ``token`` is a valid Google ID token for TASKS_OIDC_AUDIENCE.

    No audience configured means no task can be authenticated. When
    TASKS_OIDC_SERVICE_ACCOUNT is set the token must also carry that email.
    """
    if not token:
        return False

    audience = os.environ.get("TASKS_OIDC_AUDIENCE", "")
    if not audience:
        logger.error(
            "task oidc audience missing; rejecting",
            extra={"extra_fields": safe_log_context(reason="no_audience")},
        )
        return False

    try:
        claims = id_token.verify_oauth2_token(token, google_requests.Request(), audience=audience)
    except ValueError as e:
        logger.warning(
            "task oidc token rejected",
            extra={
                "extra_fields": safe_log_context(
                    error=str(e),
                    audience=audience,
                    token_audience=_extract_unverified_claim(token, "aud"),
                )
            },
        )
        return False

    service_account = os.environ.get("TASKS_OIDC_SERVICE_ACCOUNT", "")
    if service_account and claims.get("email") != service_account:
        logger.warning(
            "task oidc caller not allowed",
            extra={"extra_fields": safe_log_context(reason="wrong_service_account")},
        )
        return False
    return True


def verify_task_auth(request: Request) -> bool:
    if os.environ.get("TASKS_OIDC_AUDIENCE", "") == LOCAL_DEV_AUDIENCE and _local_secret_matches(
        request
    ):
        logger.info(
            "task authenticated with local secret",
            extra={"extra_fields": safe_log_context(method="internal_secret")},
        )
        return True

    token = extract_bearer_token(request)
    if token is None:
        logger.warning(
            "task request without bearer token",
            extra={"extra_fields": safe_log_context(reason="no_bearer")},
        )
        return False
    return verify_task_oidc(token)
