"""Tests for the outbound send pipeline and its template fallback."""

from unittest.mock import MagicMock, patch

import pytest

from booking.domain import send_pipeline
from booking.domain.conversations import ContactPhoneMissingError, ConversationNotFoundError
from booking.domain.send_pipeline import (
    DeliveryOutcome,
    EmptyMessageError,
    deliver,
    is_session_expired_error,
    send_conversation_message,
)
from booking.infra.channel_accounts import ChannelAccount, FallbackTemplate
from booking.whatsapp.meta_sender import CircuitOpenError, MetaApiError, MetaCredentials

from tests.helpers import BUSINESS_ID

CREDS = MetaCredentials(phone_number_id="106540352242922", access_token="tok")
TEMPLATE = FallbackTemplate(name="hello_world", language="en_US")
SESSION_ERROR = MetaApiError(
    "Re-engagement message: more than 24 hours have passed", code=131047, http_status=400
)
CONVERSATION_ID = "22222222-2222-2222-2222-222222222222"

ACCOUNT = ChannelAccount(
    id="acc-1",
    business_id=BUSINESS_ID,
    channel="whatsapp",
    provider_account_id="106540352242922",
    display_name="WhatsApp",
    display_number="+15550001111",
    is_active=True,
    config={"phoneNumberId": "106540352242922"},
)


class TestIsSessionExpiredError:
    @pytest.mark.parametrize("code", [131047, 131026, 470])
    def test_known_codes(self, code):
        assert is_session_expired_error(MetaApiError("x", code=code))

    def test_message_heuristic(self):
        assert is_session_expired_error(MetaApiError("Message outside the session window"))

    def test_other_errors(self):
        assert not is_session_expired_error(MetaApiError("Invalid parameter", code=100))

    def test_open_circuit_never_qualifies(self):
        assert not is_session_expired_error(CircuitOpenError(24.0))

    def test_transient_server_error_never_qualifies(self):
        error = MetaApiError(
            "Service unavailable, try again in 24 hours", http_status=503, transient=True
        )
        assert not is_session_expired_error(error)


class TestDeliver:
    def test_text_success(self):
        with patch.object(send_pipeline, "send_text", return_value="wamid.1"), patch.object(
            send_pipeline, "send_template"
        ) as mock_template:
            outcome = deliver(credentials=CREDS, to_phone="1", text="hola", template=TEMPLATE)
        assert outcome == DeliveryOutcome(ok=True, provider_message_id="wamid.1")
        mock_template.assert_not_called()

    def test_session_error_falls_back_to_template_once(self):
        with patch.object(send_pipeline, "send_text", side_effect=SESSION_ERROR), patch.object(
            send_pipeline, "send_template", return_value="wamid.T"
        ) as mock_template:
            outcome = deliver(credentials=CREDS, to_phone="1", text="hola", template=TEMPLATE)

        assert outcome.ok is True
        assert outcome.used_template is True
        assert outcome.template == "hello_world"
        assert outcome.provider_message_id == "wamid.T"
        mock_template.assert_called_once()
        assert mock_template.call_args.kwargs["template_name"] == "hello_world"
        assert mock_template.call_args.kwargs["language_code"] == "en_US"

    def test_template_failure_is_final(self):
        template_error = MetaApiError("Template does not exist", code=132001, http_status=404)
        with patch.object(send_pipeline, "send_text", side_effect=SESSION_ERROR), patch.object(
            send_pipeline, "send_template", side_effect=template_error
        ) as mock_template:
            outcome = deliver(credentials=CREDS, to_phone="1", text="hola", template=TEMPLATE)

        assert outcome.ok is False
        assert outcome.used_template is True
        assert outcome.error_code == 132001
        assert mock_template.call_count == 1

    def test_other_error_no_fallback(self):
        error = MetaApiError("Invalid parameter", code=100, http_status=400)
        with patch.object(send_pipeline, "send_text", side_effect=error), patch.object(
            send_pipeline, "send_template"
        ) as mock_template:
            outcome = deliver(credentials=CREDS, to_phone="1", text="hola", template=TEMPLATE)
        assert outcome.ok is False
        assert outcome.used_template is False
        assert outcome.error_message == "Invalid parameter"
        mock_template.assert_not_called()

    def test_fallback_disabled(self):
        with patch.object(send_pipeline, "send_text", side_effect=SESSION_ERROR), patch.object(
            send_pipeline, "send_template"
        ) as mock_template:
            outcome = deliver(credentials=CREDS, to_phone="1", text="hola", template=None)
        assert outcome.ok is False
        mock_template.assert_not_called()

    def test_not_connected(self):
        with patch.object(send_pipeline, "send_text") as mock_text:
            outcome = deliver(credentials=None, to_phone="1", text="hola", template=TEMPLATE)
        assert outcome.ok is False
        assert outcome.error_message == "WhatsApp not connected"
        mock_text.assert_not_called()

    def test_transient_flag_preserved(self):
        error = MetaApiError("HTTP 503", http_status=503, transient=True)
        with patch.object(send_pipeline, "send_text", side_effect=error):
            outcome = deliver(credentials=CREDS, to_phone="1", text="hola", template=TEMPLATE)
        assert outcome.transient is True

    @pytest.mark.parametrize(
        "error",
        [
            CircuitOpenError(24.0),
            MetaApiError("HTTP 503", code=131047, http_status=503, transient=True),
        ],
    )
    def test_outage_does_not_trigger_template(self, error):
        with patch.object(send_pipeline, "send_text", side_effect=error), patch.object(
            send_pipeline, "send_template"
        ) as mock_template:
            outcome = deliver(credentials=CREDS, to_phone="1", text="hola", template=TEMPLATE)
        assert outcome.ok is False
        assert outcome.used_template is False
        assert outcome.transient is True
        mock_template.assert_not_called()

    def test_template_sent_without_transport_retry(self):
        with patch.object(send_pipeline, "send_text", side_effect=SESSION_ERROR), patch.object(
            send_pipeline, "send_template", return_value="wamid.T"
        ) as mock_template:
            deliver(credentials=CREDS, to_phone="1", text="hola", template=TEMPLATE)
        assert mock_template.call_args.kwargs["max_retries"] == 0


class TestSendConversationMessage:
    @pytest.fixture
    def repos(self, fake_txn):
        conversation = {
            "id": CONVERSATION_ID,
            "channel": "whatsapp",
            "contact_key": "+5215512345678",
            "contact_phone": "5215512345678",
        }
        with patch.object(send_pipeline, "txn", fake_txn), patch.object(
            send_pipeline.conversations, "get_conversation", return_value=conversation
        ) as get_conv, patch.object(
            send_pipeline.conversations, "touch_last_message"
        ), patch.object(
            send_pipeline.channel_accounts, "get_active_for_business", return_value=ACCOUNT
        ), patch.object(
            send_pipeline.channel_accounts, "resolve_meta_credentials", return_value=CREDS
        ), patch.object(
            send_pipeline.outbox_repository, "create_outbox", return_value="ob-1"
        ) as create_outbox, patch.object(
            send_pipeline.outbox_repository, "lease_for_send", return_value=True
        ) as lease, patch.object(
            send_pipeline.outbox_repository, "mark_sent"
        ) as mark_sent, patch.object(
            send_pipeline.outbox_repository, "mark_failed"
        ) as mark_failed, patch.object(
            send_pipeline.messages_repository, "insert_outbound", return_value="msg-1"
        ) as insert_outbound, patch.object(
            send_pipeline.messages_repository, "mark_outbound_sent"
        ) as msg_sent, patch.object(
            send_pipeline.messages_repository, "mark_outbound_failed"
        ) as msg_failed:
            yield MagicMock(
                get_conversation=get_conv,
                create_outbox=create_outbox,
                lease=lease,
                mark_sent=mark_sent,
                mark_failed=mark_failed,
                insert_outbound=insert_outbound,
                msg_sent=msg_sent,
                msg_failed=msg_failed,
            )

    def test_blank_text_rejected_before_db(self, repos):
        with pytest.raises(EmptyMessageError):
            send_conversation_message(
                business_id=BUSINESS_ID, conversation_id=CONVERSATION_ID, text="  "
            )
        repos.get_conversation.assert_not_called()

    def test_unknown_conversation(self, repos):
        repos.get_conversation.return_value = None
        with pytest.raises(ConversationNotFoundError):
            send_conversation_message(
                business_id=BUSINESS_ID, conversation_id=CONVERSATION_ID, text="hola"
            )
        repos.create_outbox.assert_not_called()

    def test_conversation_without_phone(self, repos):
        repos.get_conversation.return_value = {
            "id": CONVERSATION_ID,
            "channel": "whatsapp",
            "contact_key": None,
            "contact_phone": None,
        }
        with pytest.raises(ContactPhoneMissingError):
            send_conversation_message(
                business_id=BUSINESS_ID, conversation_id=CONVERSATION_ID, text="hola"
            )

    def test_success_marks_sent(self, repos):
        with patch.object(send_pipeline, "send_text", return_value="wamid.1"):
            result = send_conversation_message(
                business_id=BUSINESS_ID, conversation_id=CONVERSATION_ID, text=" hola "
            )

        assert result.to_response() == {
            "ok": True,
            "outboxId": "ob-1",
            "messageId": "msg-1",
            "status": "SENT",
            "usedTemplate": False,
        }
        assert repos.create_outbox.call_args.kwargs["text"] == "hola"
        assert repos.create_outbox.call_args.kwargs["to_phone"] == "+5215512345678"
        repos.lease.assert_called_once()
        repos.mark_sent.assert_called_once()
        assert repos.msg_sent.call_args.kwargs["provider_message_id"] == "wamid.1"

    def test_session_expired_uses_template(self, repos):
        with patch.object(send_pipeline, "send_text", side_effect=SESSION_ERROR), patch.object(
            send_pipeline, "send_template", return_value="wamid.T"
        ) as mock_template:
            result = send_conversation_message(
                business_id=BUSINESS_ID, conversation_id=CONVERSATION_ID, text="hola"
            )
        body = result.to_response()
        assert body["ok"] is True
        assert body["usedTemplate"] is True
        assert mock_template.call_count == 1
        assert repos.msg_sent.call_args.kwargs["used_template"] is True

    def test_double_failure_marks_failed(self, repos):
        rejected = MetaApiError("template rejected", code=132000)
        with patch.object(send_pipeline, "send_text", side_effect=SESSION_ERROR), patch.object(
            send_pipeline, "send_template", side_effect=rejected
        ):
            result = send_conversation_message(
                business_id=BUSINESS_ID, conversation_id=CONVERSATION_ID, text="hola"
            )
        body = result.to_response()
        assert body["ok"] is False
        assert body["status"] == "FAILED"
        assert body["usedTemplate"] is True
        assert body["error"] == "template rejected"
        repos.mark_failed.assert_called_once()
        repos.msg_failed.assert_called_once()
        repos.mark_sent.assert_not_called()

    def test_not_connected_fails_without_provider_call(self, repos):
        with patch.object(
            send_pipeline.channel_accounts, "resolve_meta_credentials", return_value=None
        ), patch.object(send_pipeline, "send_text") as mock_text:
            result = send_conversation_message(
                business_id=BUSINESS_ID, conversation_id=CONVERSATION_ID, text="hola"
            )
        assert result.to_response()["error"] == "WhatsApp not connected"
        mock_text.assert_not_called()
        repos.mark_failed.assert_called_once()
