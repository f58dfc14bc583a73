"""Outbox recovery: admin manual retry and the worker sweep.

A manual retry only moves a FAILED row back to PENDING. The sweep (worker
role) re-sends due PENDING rows; transient failures are rescheduled with
exponential backoff, permanent ones and exhausted rows end FAILED.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any

from booking.infra import channel_accounts
from booking.infra.db import txn
from booking.infra.repositories import messages_repository, outbox_repository
from booking.infra.time import utc_now
from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context

from .send_pipeline import credentials_for, deliver, record_outcome

logger = get_logger(__name__)

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_SWEEP_BATCH = 20
BACKOFF_BASE_SECONDS = 30
BACKOFF_CAP_SECONDS = 3600


class OutboxNotFoundError(Exception):
    """No outbox row with that id."""


class OutboxNotRetryableError(Exception):
    """The outbox row is not FAILED."""

    def __init__(self, outbox_id: str, status: str) -> None:
        super().__init__(f"outbox {outbox_id} is {status}, only FAILED can be retried")
        self.outbox_id = outbox_id
        self.status = status


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if not raw:
        return default
    try:
        return max(1, int(raw))
    except ValueError:
        return default


def max_attempts() -> int:
    return _env_int("OUTBOX_MAX_ATTEMPTS", DEFAULT_MAX_ATTEMPTS)


def sweep_batch_size() -> int:
    return _env_int("OUTBOX_SWEEP_BATCH", DEFAULT_SWEEP_BATCH)


def backoff_delay(attempt_count: int) -> timedelta:
    """30s, 60s, 120s, ... capped at one hour."""
    exponent = max(attempt_count - 1, 0)
    seconds = min(BACKOFF_BASE_SECONDS * (2 ** min(exponent, 16)), BACKOFF_CAP_SECONDS)
    return timedelta(seconds=seconds)


def retry_outbox(outbox_id: str) -> dict[str, Any]:
    """FAILED -> PENDING for one row. Nothing changes for other statuses.

    Raises:
        OutboxNotFoundError: If the id is unknown.
        OutboxNotRetryableError: If the row exists but is not FAILED.
    """
    with txn() as cur:
        row = outbox_repository.reset_failed_to_pending(cur, outbox_id)
        if row is None:
            current = outbox_repository.get_outbox(cur, outbox_id)
            if current is None:
                raise OutboxNotFoundError(outbox_id)
            raise OutboxNotRetryableError(outbox_id, current["status"])
        message_id = messages_repository.find_by_outbox_id(cur, outbox_id)
        if message_id:
            messages_repository.requeue_outbound(cur, message_id)

    logger.info(
        "outbox row reset for retry",
        extra={
            "extra_fields": safe_log_context(
                outbox_id=outbox_id,
                business_id=row["business_id"],
                attempt_count=row["attempt_count"],
            )
        },
    )
    return row


@dataclass
class SweepReport:
    claimed: int = 0
    sent: int = 0
    rescheduled: int = 0
    failed: int = 0
    outbox_ids: list[str] = field(default_factory=list)

    def to_response(self) -> dict[str, Any]:
        return {
            "ok": True,
            "claimed": self.claimed,
            "sent": self.sent,
            "rescheduled": self.rescheduled,
            "failed": self.failed,
        }


def _resend(row: dict[str, Any], account: channel_accounts.ChannelAccount | None, limit: int) -> str:
    """Re-send one claimed row and store the outcome. Returns the bucket it landed in."""
    outcome = deliver(
        credentials=credentials_for(account),
        to_phone=row["to_phone"],
        text=row["text"],
        template=None,
    )
    with txn() as cur:
        message_id = messages_repository.find_by_outbox_id(cur, row["id"])
        if outcome.ok or not outcome.transient or row["attempt_count"] >= limit:
            record_outcome(cur, outbox_id=row["id"], message_id=message_id, outcome=outcome)
            return "sent" if outcome.ok else "failed"
        outbox_repository.reschedule(
            cur,
            row["id"],
            error=outcome.error_message or "send failed",
            next_attempt_at=utc_now() + backoff_delay(row["attempt_count"]),
        )
    return "rescheduled"


def sweep_due(batch: int | None = None) -> SweepReport:
    """Claim and re-send due PENDING rows. Safe to run concurrently."""
    limit = max_attempts()
    with txn() as cur:
        claimed = outbox_repository.claim_due(cur, limit=batch or sweep_batch_size())
        accounts = {
            business_id: channel_accounts.get_active_for_business(cur, business_id)
            for business_id in {row["business_id"] for row in claimed}
        }

    report = SweepReport(claimed=len(claimed))
    for row in claimed:
        bucket = _resend(row, accounts.get(row["business_id"]), limit)
        setattr(report, bucket, getattr(report, bucket) + 1)
        report.outbox_ids.append(row["id"])

    if claimed:
        logger.info(
            "outbox sweep finished",
            extra={
                "extra_fields": safe_log_context(
                    claimed=report.claimed,
                    sent=report.sent,
                    rescheduled=report.rescheduled,
                    failed=report.failed,
                )
            },
        )
    return report
