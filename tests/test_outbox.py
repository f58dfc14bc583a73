"""Tests for admin outbox retry and the worker sweep."""

from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from booking.domain import outbox
from booking.domain.outbox import (
    OutboxNotFoundError,
    OutboxNotRetryableError,
    backoff_delay,
    retry_outbox,
    sweep_due,
)
from booking.domain.send_pipeline import DeliveryOutcome
from tests.helpers import BUSINESS_ID


def _row(status="SENDING", attempt_count=1, **overrides):
    row = {
        "id": "ob-1",
        "business_id": BUSINESS_ID,
        "conversation_id": "conv-1",
        "to_phone": "+5215512345678",
        "text": "hola",
        "status": status,
        "attempt_count": attempt_count,
    }
    row.update(overrides)
    return row


class TestBackoff:
    @pytest.mark.parametrize(
        "attempts, seconds",
        [(0, 30), (1, 30), (2, 60), (3, 120), (5, 480), (8, 3600), (50, 3600)],
    )
    def test_exponential_with_cap(self, attempts, seconds):
        assert backoff_delay(attempts) == timedelta(seconds=seconds)


class TestRetryOutbox:
    @pytest.fixture(autouse=True)
    def _txn(self, fake_txn):
        with patch.object(outbox, "txn", fake_txn):
            yield

    def test_failed_row_reset_to_pending(self):
        reset = _row(status="PENDING", attempt_count=3)
        with patch.object(
            outbox.outbox_repository, "reset_failed_to_pending", return_value=reset
        ), patch.object(
            outbox.messages_repository, "find_by_outbox_id", return_value="msg-1"
        ), patch.object(outbox.messages_repository, "requeue_outbound") as requeue:
            row = retry_outbox("ob-1")
        assert row["status"] == "PENDING"
        requeue.assert_called_once()
        assert requeue.call_args.args[1] == "msg-1"

    @pytest.mark.parametrize("status", ["PENDING", "SENDING", "SENT"])
    def test_non_failed_rejected_without_mutation(self, status):
        with patch.object(
            outbox.outbox_repository, "reset_failed_to_pending", return_value=None
        ), patch.object(
            outbox.outbox_repository, "get_outbox", return_value=_row(status=status)
        ), patch.object(outbox.messages_repository, "requeue_outbound") as requeue:
            with pytest.raises(OutboxNotRetryableError) as exc_info:
                retry_outbox("ob-1")
        assert exc_info.value.status == status
        requeue.assert_not_called()

    def test_unknown_id(self):
        with patch.object(
            outbox.outbox_repository, "reset_failed_to_pending", return_value=None
        ), patch.object(outbox.outbox_repository, "get_outbox", return_value=None):
            with pytest.raises(OutboxNotFoundError):
                retry_outbox("missing")


class TestSweepDue:
    @pytest.fixture
    def repos(self, fake_txn):
        with patch.object(outbox, "txn", fake_txn), patch.object(
            outbox.outbox_repository, "claim_due", return_value=[_row()]
        ) as claim_due, patch.object(
            outbox.channel_accounts, "get_active_for_business", return_value=MagicMock()
        ), patch.object(
            outbox, "credentials_for", return_value=MagicMock()
        ), patch.object(
            outbox.messages_repository, "find_by_outbox_id", return_value="msg-1"
        ), patch.object(
            outbox, "record_outcome"
        ) as record_outcome, patch.object(
            outbox.outbox_repository, "reschedule"
        ) as reschedule:
            yield MagicMock(
                claim_due=claim_due, record_outcome=record_outcome, reschedule=reschedule
            )

    def test_success_recorded(self, repos):
        with patch.object(outbox, "deliver", return_value=DeliveryOutcome(ok=True)) as mock_deliver:
            report = sweep_due()
        assert report.to_response() == {
            "ok": True,
            "claimed": 1,
            "sent": 1,
            "rescheduled": 0,
            "failed": 0,
        }
        assert mock_deliver.call_args.kwargs["template"] is None
        repos.record_outcome.assert_called_once()
        repos.reschedule.assert_not_called()

    def test_transient_failure_rescheduled(self, repos):
        outcome = DeliveryOutcome(ok=False, error_message="HTTP 503", transient=True)
        with patch.object(outbox, "deliver", return_value=outcome):
            report = sweep_due()
        assert report.rescheduled == 1
        repos.reschedule.assert_called_once()
        assert repos.reschedule.call_args.kwargs["error"] == "HTTP 503"
        repos.record_outcome.assert_not_called()

    def test_permanent_failure_marked_failed(self, repos):
        outcome = DeliveryOutcome(ok=False, error_message="Invalid parameter", error_code=100)
        with patch.object(outbox, "deliver", return_value=outcome):
            report = sweep_due()
        assert report.failed == 1
        repos.record_outcome.assert_called_once()
        repos.reschedule.assert_not_called()

    def test_exhausted_attempts_marked_failed(self, repos, monkeypatch):
        monkeypatch.setenv("OUTBOX_MAX_ATTEMPTS", "3")
        repos.claim_due.return_value = [_row(attempt_count=3)]
        outcome = DeliveryOutcome(ok=False, error_message="HTTP 503", transient=True)
        with patch.object(outbox, "deliver", return_value=outcome):
            report = sweep_due()
        assert report.failed == 1
        repos.reschedule.assert_not_called()

    def test_nothing_due(self, repos):
        repos.claim_due.return_value = []
        with patch.object(outbox, "deliver") as mock_deliver:
            report = sweep_due()
        assert report.claimed == 0
        mock_deliver.assert_not_called()

    def test_batch_size_from_env(self, repos, monkeypatch):
        monkeypatch.setenv("OUTBOX_SWEEP_BATCH", "7")
        repos.claim_due.return_value = []
        sweep_due()
        assert repos.claim_due.call_args.kwargs["limit"] == 7
