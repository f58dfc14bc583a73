"""Worker route for the outbox sweep (called by Cloud Scheduler)."""

from fastapi import APIRouter, HTTPException, Query, Request

from booking.api.task_auth import verify_task_auth
from booking.domain.outbox import sweep_due
from booking.observability.correlation import get_correlation_id
from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context

router = APIRouter(prefix="/tasks/outbox", tags=["tasks"])

logger = get_logger(__name__)


@router.post("/sweep")
def handle_sweep(request: Request, batch: int | None = Query(None, ge=1, le=200)) -> dict:
    """Re-send due PENDING outbox rows.

    Returns counts per outcome: sent, rescheduled (transient error) and
    failed (permanent error or attempts exhausted).
    """
    if not verify_task_auth(request):
        logger.warning(
            "task auth failed",
            extra={"extra_fields": safe_log_context(correlationId=get_correlation_id())},
        )
        raise HTTPException(status_code=401, detail="Unauthorized")

    return sweep_due(batch).to_response()
