"""Outbound WhatsApp messaging via the Meta Graph API.

Security: NEVER log to_phone, text or access tokens. Only hashes and lengths.

Every call goes through a process-wide circuit breaker and has a bounded
timeout, so a hung Graph API cannot pin request threads.
"""

from __future__ import annotations

import hashlib
import os
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable

import requests

from booking.observability.correlation import get_correlation_id
from booking.observability.logging import get_logger
from booking.observability.redaction import safe_log_context

logger = get_logger(__name__)

DEFAULT_GRAPH_API_VERSION = "v22.0"
DEFAULT_HTTP_TIMEOUT = 10.0

MAX_RETRIES = 1
RETRY_DELAY = 0.2


class MetaApiError(Exception):
    """Graph API rejected the call or could not be reached.

    ``code`` is Meta's numeric error code when the response carried one.
    ``transient`` marks network failures, 5xx and 429 responses.
    """

    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        http_status: int | None = None,
        transient: bool = False,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.http_status = http_status
        self.transient = transient


class CircuitOpenError(MetaApiError):
    """Raised without calling Meta while the breaker is open."""

    def __init__(self, retry_in: float) -> None:
        super().__init__(
            f"WhatsApp API circuit open, retry in {retry_in:.0f}s",
            transient=True,
        )
        self.retry_in = retry_in


@dataclass(frozen=True)
class MetaCredentials:
    phone_number_id: str
    access_token: str


class CircuitBreaker:
    """Consecutive-failure breaker: CLOSED -> OPEN -> HALF_OPEN -> CLOSED.

    While OPEN every call fails fast. After ``recovery_seconds`` one trial
    call is let through; its outcome closes or re-opens the circuit.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_seconds: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = failure_threshold
        self.recovery_seconds = recovery_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._failures = 0
        self._opened_at: float | None = None
        self._trial_in_flight = False

    @property
    def state(self) -> str:
        with self._lock:
            if self._opened_at is None:
                return "closed"
            if self._clock() - self._opened_at >= self.recovery_seconds:
                return "half_open"
            return "open"

    def before_call(self) -> None:
        with self._lock:
            if self._opened_at is None:
                return
            elapsed = self._clock() - self._opened_at
            if elapsed < self.recovery_seconds or self._trial_in_flight:
                raise CircuitOpenError(max(self.recovery_seconds - elapsed, 0.0))
            self._trial_in_flight = True

    def record_success(self) -> None:
        with self._lock:
            self._failures = 0
            self._opened_at = None
            self._trial_in_flight = False

    def record_failure(self) -> None:
        with self._lock:
            self._failures += 1
            self._trial_in_flight = False
            if self._opened_at is not None or self._failures >= self.failure_threshold:
                self._opened_at = self._clock()


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.environ.get(name, default))
    except ValueError:
        return default


_breaker = CircuitBreaker(
    failure_threshold=int(_env_float("META_CB_FAILURE_THRESHOLD", 5)),
    recovery_seconds=_env_float("META_CB_RECOVERY_SECONDS", 30.0),
)


def _get_breaker() -> CircuitBreaker:
    """Shared breaker instance (tests replace it)."""
    return _breaker


def _hash_identifier(value: str) -> str:
    return hashlib.sha256(value.encode()).hexdigest()[:12]


def _messages_url(phone_number_id: str) -> str:
    version = os.environ.get("META_GRAPH_API_VERSION", DEFAULT_GRAPH_API_VERSION)
    return f"https://graph.facebook.com/{version}/{phone_number_id}/messages"


def _error_from_response(resp: requests.Response) -> MetaApiError:
    message = f"HTTP {resp.status_code}"
    code: int | None = None
    try:
        error = (resp.json() or {}).get("error") or {}
    except ValueError:
        error = {}
    if isinstance(error, dict):
        message = str(error.get("message") or message)
        details = (error.get("error_data") or {}).get("details")
        if details:
            message = f"{message} ({details})"
        raw_code = error.get("code")
        code = raw_code if isinstance(raw_code, int) else None
    transient = resp.status_code >= 500 or resp.status_code == 429
    return MetaApiError(message, code=code, http_status=resp.status_code, transient=transient)


def _do_request(url: str, payload: dict[str, Any], access_token: str) -> dict[str, Any]:
    """POST to the Graph API. Raises MetaApiError on any failure."""
    timeout = _env_float("META_HTTP_TIMEOUT", DEFAULT_HTTP_TIMEOUT)
    try:
        resp = requests.post(
            url,
            json=payload,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=timeout,
        )
    except requests.Timeout as exc:
        raise MetaApiError("WhatsApp API timeout", transient=True) from exc
    except requests.RequestException as exc:
        raise MetaApiError(f"WhatsApp API unreachable: {type(exc).__name__}", transient=True) from exc

    if resp.status_code >= 400:
        raise _error_from_response(resp)
    try:
        return resp.json()
    except ValueError:
        return {}


def _post_message(
    credentials: MetaCredentials,
    payload: dict[str, Any],
    *,
    to_phone: str,
    kind: str,
    correlation_id: str | None,
    max_retries: int = MAX_RETRIES,
) -> str | None:
    """Send one Graph API message through the breaker, retrying transient
    failures up to ``max_retries`` times. Returns Meta's message id when present."""
    breaker = _get_breaker()
    url = _messages_url(credentials.phone_number_id)
    log_ctx = safe_log_context(
        correlationId=correlation_id or get_correlation_id(),
        to_hash=_hash_identifier(to_phone),
        kind=kind,
        provider="meta",
    )
    logger.info("sending outbound message via meta", extra={"extra_fields": log_ctx})

    for attempt in range(max_retries + 1):
        breaker.before_call()
        try:
            body = _do_request(url, payload, credentials.access_token)
        except MetaApiError as exc:
            if exc.transient:
                breaker.record_failure()
            else:
                # The API answered; a rejected request says nothing about its health.
                breaker.record_success()
            fields = safe_log_context(
                **log_ctx,
                attempt=attempt,
                http_status=exc.http_status,
                error_code=exc.code,
            )
            if exc.transient and attempt < max_retries:
                logger.warning("outbound send via meta failed, retrying", extra={"extra_fields": fields})
                time.sleep(RETRY_DELAY)
                continue
            logger.error("outbound send via meta failed", extra={"extra_fields": fields})
            raise

        breaker.record_success()
        messages = body.get("messages") if isinstance(body, dict) else None
        provider_id = None
        if isinstance(messages, list) and messages and isinstance(messages[0], dict):
            provider_id = messages[0].get("id")
        logger.info(
            "outbound message sent via meta",
            extra={"extra_fields": safe_log_context(**log_ctx, attempt=attempt)},
        )
        return str(provider_id) if provider_id else None

    return None


def send_text(
    *,
    credentials: MetaCredentials,
    to_phone: str,
    text: str,
    correlation_id: str | None = None,
) -> str | None:
    """Send a free-form text message.

    Only valid inside the 24h customer service window; outside it Meta
    answers with error 131047 and a template must be used instead.

    Raises:
        MetaApiError: On rejection, network failure or open circuit.
    """
    payload = {
        "messaging_product": "whatsapp",
        "recipient_type": "individual",
        "to": to_phone,
        "type": "text",
        "text": {"preview_url": False, "body": text},
    }
    return _post_message(
        credentials, payload, to_phone=to_phone, kind="text", correlation_id=correlation_id
    )


def send_template(
    *,
    credentials: MetaCredentials,
    to_phone: str,
    template_name: str,
    language_code: str,
    correlation_id: str | None = None,
    max_retries: int = MAX_RETRIES,
) -> str | None:
    """Send a pre-approved template message (no parameters).

    ``max_retries=0`` makes this a single HTTP attempt.
    """
    payload = {
        "messaging_product": "whatsapp",
        "to": to_phone,
        "type": "template",
        "template": {"name": template_name, "language": {"code": language_code}},
    }
    return _post_message(
        credentials,
        payload,
        to_phone=to_phone,
        kind="template",
        correlation_id=correlation_id,
        max_retries=max_retries,
    )
