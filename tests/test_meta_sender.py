"""Tests for the Meta Graph API sender and its circuit breaker."""

from unittest.mock import MagicMock, patch

import pytest
import requests

from booking.whatsapp import meta_sender
from booking.whatsapp.meta_sender import (
    CircuitBreaker,
    CircuitOpenError,
    MetaApiError,
    MetaCredentials,
    send_template,
    send_text,
)

POST = "booking.whatsapp.meta_sender.requests.post"
CREDS = MetaCredentials(phone_number_id="106540352242922", access_token="EAAG-token")


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture(autouse=True)
def _no_sleep():
    with patch("booking.whatsapp.meta_sender.time.sleep"):
        yield


class TestSendText:
    def test_posts_text_payload_and_returns_id(self):
        with patch.object(
            meta_sender, "_do_request", return_value={"messages": [{"id": "wamid.OUT1"}]}
        ) as mock_request:
            provider_id = send_text(credentials=CREDS, to_phone="5215512345678", text="hola")

        assert provider_id == "wamid.OUT1"
        url, payload, token = mock_request.call_args.args
        assert url.endswith("/106540352242922/messages")
        assert payload["type"] == "text"
        assert payload["text"]["body"] == "hola"
        assert payload["to"] == "5215512345678"
        assert token == "EAAG-token"

    def test_graph_version_from_env(self, monkeypatch):
        monkeypatch.setenv("META_GRAPH_API_VERSION", "v99.0")
        with patch.object(meta_sender, "_do_request", return_value={}) as mock_request:
            assert send_text(credentials=CREDS, to_phone="1", text="x") is None
        assert "/v99.0/" in mock_request.call_args.args[0]

    def test_permanent_error_not_retried(self):
        error = MetaApiError("Re-engagement message", code=131047, http_status=400)
        with patch.object(meta_sender, "_do_request", side_effect=error) as mock_request:
            with pytest.raises(MetaApiError) as exc_info:
                send_text(credentials=CREDS, to_phone="1", text="x")
        assert exc_info.value.code == 131047
        assert mock_request.call_count == 1

    def test_transient_error_retried_once(self):
        error = MetaApiError("HTTP 503", http_status=503, transient=True)
        with patch.object(
            meta_sender, "_do_request", side_effect=[error, {"messages": [{"id": "wamid.2"}]}]
        ) as mock_request:
            assert send_text(credentials=CREDS, to_phone="1", text="x") == "wamid.2"
        assert mock_request.call_count == 2


class TestSendTemplate:
    def test_template_payload(self):
        with patch.object(meta_sender, "_do_request", return_value={}) as mock_request:
            send_template(
                credentials=CREDS, to_phone="1", template_name="hello_world", language_code="en_US"
            )
        payload = mock_request.call_args.args[1]
        assert payload["type"] == "template"
        assert payload["template"] == {"name": "hello_world", "language": {"code": "en_US"}}

    def test_single_attempt_when_retries_disabled(self):
        error = MetaApiError("HTTP 503", http_status=503, transient=True)
        with patch.object(meta_sender, "_do_request", side_effect=error) as mock_request:
            with pytest.raises(MetaApiError):
                send_template(
                    credentials=CREDS,
                    to_phone="1",
                    template_name="hello_world",
                    language_code="en_US",
                    max_retries=0,
                )
        assert mock_request.call_count == 1


class TestDoRequest:
    def _response(self, status, body):
        resp = MagicMock()
        resp.status_code = status
        resp.json.return_value = body
        return resp

    def test_error_body_parsed(self):
        body = {"error": {"message": "Invalid parameter", "code": 100}}
        with patch(POST, return_value=self._response(400, body)):
            with pytest.raises(MetaApiError) as exc_info:
                meta_sender._do_request("https://x", {}, "t")
        assert exc_info.value.code == 100
        assert exc_info.value.http_status == 400
        assert exc_info.value.transient is False

    def test_server_error_is_transient(self):
        with patch(POST, return_value=self._response(502, {})):
            with pytest.raises(MetaApiError) as exc_info:
                meta_sender._do_request("https://x", {}, "t")
        assert exc_info.value.transient is True

    def test_timeout_is_transient(self):
        with patch(POST, side_effect=requests.Timeout()):
            with pytest.raises(MetaApiError) as exc_info:
                meta_sender._do_request("https://x", {}, "t")
        assert exc_info.value.transient is True

    def test_bearer_header(self):
        with patch(
            POST, return_value=self._response(200, {})
        ) as mock_post:
            meta_sender._do_request("https://x", {"a": 1}, "tok")
        assert mock_post.call_args.kwargs["headers"]["Authorization"] == "Bearer tok"


class TestCircuitBreaker:
    def test_opens_after_threshold(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_seconds=30, clock=FakeClock())
        breaker.record_failure()
        breaker.before_call()
        breaker.record_failure()
        assert breaker.state == "open"
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_half_open_allows_one_trial(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, recovery_seconds=30, clock=clock)
        breaker.record_failure()
        clock.now += 31
        assert breaker.state == "half_open"
        breaker.before_call()
        with pytest.raises(CircuitOpenError):
            breaker.before_call()

    def test_trial_success_closes(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=1, recovery_seconds=30, clock=clock)
        breaker.record_failure()
        clock.now += 31
        breaker.before_call()
        breaker.record_success()
        assert breaker.state == "closed"

    def test_trial_failure_reopens(self):
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=3, recovery_seconds=30, clock=clock)
        for _ in range(3):
            breaker.record_failure()
        clock.now += 31
        breaker.before_call()
        breaker.record_failure()
        assert breaker.state == "open"

    def test_open_circuit_fails_fast_without_request(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_seconds=30, clock=FakeClock())
        breaker.record_failure()
        with patch.object(meta_sender, "_get_breaker", return_value=breaker), patch.object(
            meta_sender, "_do_request"
        ) as mock_request:
            with pytest.raises(CircuitOpenError) as exc_info:
                send_text(credentials=CREDS, to_phone="1", text="x")
        mock_request.assert_not_called()
        assert exc_info.value.transient is True

    def test_rejections_do_not_trip_breaker(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_seconds=30, clock=FakeClock())
        error = MetaApiError("bad", code=100, http_status=400)
        with patch.object(meta_sender, "_get_breaker", return_value=breaker), patch.object(
            meta_sender, "_do_request", side_effect=error
        ):
            with pytest.raises(MetaApiError):
                send_text(credentials=CREDS, to_phone="1", text="x")
        assert breaker.state == "closed"
