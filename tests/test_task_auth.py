"""Worker task authentication: OIDC bearer tokens and the local-dev secret."""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import jwt
import pytest

from booking.api.task_auth import (
    INTERNAL_SECRET_HEADER,
    LOCAL_DEV_AUDIENCE,
    _extract_unverified_claim,
    extract_bearer_token,
    verify_task_auth,
    verify_task_oidc,
)


def _request(headers: dict | None = None) -> MagicMock:
    request = MagicMock()
    request.headers = headers or {}
    return request


def _signed_token(claims: dict) -> str:
    return jwt.encode(claims, "some-other-signing-key-of-32-bytes!!", algorithm="HS256")


@pytest.fixture(autouse=True)
def _clear_task_env(monkeypatch):
    for name in ("TASKS_OIDC_AUDIENCE", "TASKS_OIDC_SERVICE_ACCOUNT", "INTERNAL_TASK_SECRET"):
        monkeypatch.delenv(name, raising=False)


class TestLocalDevSecret:
    def test_accepts_matching_secret(self, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", LOCAL_DEV_AUDIENCE)
        monkeypatch.setenv("INTERNAL_TASK_SECRET", "s3cret")
        assert verify_task_auth(_request({INTERNAL_SECRET_HEADER: "s3cret"})) is True

    def test_rejects_wrong_secret(self, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", LOCAL_DEV_AUDIENCE)
        monkeypatch.setenv("INTERNAL_TASK_SECRET", "s3cret")
        assert verify_task_auth(_request({INTERNAL_SECRET_HEADER: "guess"})) is False

    def test_secret_ignored_outside_local_dev(self, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "https://worker.example.com")
        monkeypatch.setenv("INTERNAL_TASK_SECRET", "s3cret")
        assert verify_task_auth(_request({INTERNAL_SECRET_HEADER: "s3cret"})) is False

    def test_empty_configured_secret_never_matches(self, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", LOCAL_DEV_AUDIENCE)
        assert verify_task_auth(_request({INTERNAL_SECRET_HEADER: ""})) is False


class TestBearer:
    def test_extract(self):
        assert extract_bearer_token(_request({"Authorization": "Bearer abc"})) == "abc"

    @pytest.mark.parametrize("header", ["", "Basic abc", "Bearer ", "bearer abc"])
    def test_extract_missing(self, header):
        assert extract_bearer_token(_request({"Authorization": header})) is None

    def test_missing_bearer_fails(self, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "https://worker.example.com")
        assert verify_task_auth(_request()) is False


class TestOidc:
    def test_fails_closed_without_audience(self):
        with patch("booking.api.task_auth.id_token.verify_oauth2_token") as verify:
            assert verify_task_oidc("token") is False
        verify.assert_not_called()

    def test_valid_token(self, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "https://worker.example.com")
        with patch(
            "booking.api.task_auth.id_token.verify_oauth2_token",
            return_value={"email": "scheduler@project.iam.gserviceaccount.com"},
        ) as verify:
            assert verify_task_oidc("token") is True
        assert verify.call_args.kwargs["audience"] == "https://worker.example.com"

    def test_invalid_token(self, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "https://worker.example.com")
        with patch(
            "booking.api.task_auth.id_token.verify_oauth2_token",
            side_effect=ValueError("Token expired"),
        ):
            assert verify_task_oidc(_signed_token({"aud": "other"})) is False

    def test_service_account_mismatch(self, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "https://worker.example.com")
        monkeypatch.setenv("TASKS_OIDC_SERVICE_ACCOUNT", "scheduler@project.iam.gserviceaccount.com")
        with patch(
            "booking.api.task_auth.id_token.verify_oauth2_token",
            return_value={"email": "someone@else.com"},
        ):
            assert verify_task_oidc("token") is False

    def test_bearer_goes_through_oidc(self, monkeypatch):
        monkeypatch.setenv("TASKS_OIDC_AUDIENCE", "https://worker.example.com")
        with patch("booking.api.task_auth.verify_task_oidc", return_value=True) as verify:
            assert verify_task_auth(_request({"Authorization": "Bearer tok"})) is True
        verify.assert_called_once_with("tok")


class TestUnverifiedClaim:
    def test_reads_claim(self):
        assert _extract_unverified_claim(_signed_token({"aud": "x"}), "aud") == "x"

    @pytest.mark.parametrize("token", ["", "nodots", "a.!!!.c", "a.bnVsbA.c"])
    def test_garbage_is_none(self, token):
        assert _extract_unverified_claim(token, "aud") is None
