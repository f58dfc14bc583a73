"""WhatsApp Cloud API webhook.

Response contract with Meta:
- 400 for a body that is not JSON (nothing is stored).
- 200 for anything we intentionally drop (unknown number, bad signature),
  so Meta does not retry it forever.
- 500 when processing failed after the audit row was written; Meta
  retries and message dedup absorbs the replay.

Security: NEVER log phone numbers or message text from the payload.
"""

from __future__ import annotations

import json
import os
from typing import Any

from fastapi import APIRouter, Header, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, PlainTextResponse

from booking.domain.tenants import TenantResolutionError
from booking.domain.webhook_ingestion import WebhookProcessingError, ingest
from booking.observability.correlation import get_correlation_id
from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context
from booking.whatsapp.meta_adapter import SignatureVerificationError, verify_signature

router = APIRouter(prefix="/api/webhooks/whatsapp", tags=["webhooks"])

logger = get_logger(__name__)


@router.get("")
def whatsapp_webhook_verify(
    hub_mode: str | None = Query(None, alias="hub.mode"),
    hub_verify_token: str | None = Query(None, alias="hub.verify_token"),
    hub_challenge: str | None = Query(None, alias="hub.challenge"),
) -> Response:
    """Subscription handshake: echo ``hub.challenge`` when the token matches."""
    expected_token = os.environ.get("WHATSAPP_VERIFY_TOKEN", "")
    if not expected_token:
        return PlainTextResponse("OK (no verify token configured)")

    if hub_mode == "subscribe" and hub_verify_token == expected_token:
        logger.info(
            "whatsapp webhook verification successful",
            extra={"extra_fields": safe_log_context(hub_mode=hub_mode)},
        )
        return PlainTextResponse(hub_challenge or "")

    logger.warning(
        "whatsapp webhook verification failed",
        extra={"extra_fields": safe_log_context(hub_mode=hub_mode or "missing")},
    )
    return PlainTextResponse("Forbidden", status_code=403)


@router.post("")
async def whatsapp_webhook(
    request: Request,
    x_hub_signature_256: str | None = Header(None, alias="X-Hub-Signature-256"),
) -> Response:
    correlation_id = get_correlation_id()
    body_bytes = await request.body()

    app_secret = os.environ.get("META_APP_SECRET", "")
    if app_secret:
        try:
            verify_signature(body_bytes, x_hub_signature_256 or "", app_secret)
        except SignatureVerificationError as e:
            logger.warning(
                "whatsapp signature verification failed",
                extra={"extra_fields": safe_log_context(correlationId=correlation_id, error=str(e))},
            )
            return JSONResponse({"ok": True, "processed": False, "reason": "invalid_signature"})

    try:
        payload: Any = json.loads(body_bytes or b"")
    except ValueError:
        logger.warning(
            "invalid json body",
            extra={"extra_fields": safe_log_context(correlationId=correlation_id)},
        )
        return JSONResponse({"ok": False, "error": "Invalid JSON"}, status_code=400)
    if not isinstance(payload, dict):
        return JSONResponse({"ok": False, "error": "Invalid JSON"}, status_code=400)

    try:
        result = await run_in_threadpool(ingest, payload)
    except TenantResolutionError as e:
        logger.warning(
            "whatsapp webhook not attributable to a business",
            extra={
                "extra_fields": safe_log_context(
                    correlationId=correlation_id,
                    reason=e.reason,
                    phone_number_id=e.phone_number_id,
                )
            },
        )
        return JSONResponse({"ok": True, "processed": False, "reason": e.reason})
    except WebhookProcessingError as e:
        return JSONResponse(
            {"ok": False, "error": "processing failed", "eventId": e.event_id},
            status_code=500,
        )

    return JSONResponse(result.to_response())
