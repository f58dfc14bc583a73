"""Shared pytest fixtures for booking inbox tests."""
import sys
sys.dont_write_bytecode = True

from contextlib import contextmanager  # noqa: E402
from unittest.mock import MagicMock, patch  # noqa: E402

import pytest  # noqa: E402

from tests.helpers import SESSION_SECRET  # noqa: E402


@pytest.fixture(autouse=True)
def _reset_process_state():
    """Reset module-level singletons (circuit breaker, admin cache) between tests."""
    import booking.domain.admin_metrics as admin_metrics
    import booking.whatsapp.meta_sender as meta_sender

    admin_metrics._get_cache().clear()
    meta_sender._get_breaker().record_success()
    yield
    admin_metrics._get_cache().clear()
    meta_sender._get_breaker().record_success()


@pytest.fixture
def session_env(monkeypatch):
    monkeypatch.setenv("SESSION_SECRET", SESSION_SECRET)
    return SESSION_SECRET


@pytest.fixture
def mock_cur():
    return MagicMock()


@pytest.fixture
def fake_txn(mock_cur):
    """A txn() replacement that yields ``mock_cur`` without touching a database."""

    @contextmanager
    def _txn(conn=None):
        yield mock_cur

    return _txn


@pytest.fixture
def app_client(session_env):
    """Public-role client with a gate cookie and a selected, live business."""
    from fastapi.testclient import TestClient

    from booking.api.factory import create_app
    from tests.helpers import BUSINESS_ID, session_cookies

    client = TestClient(create_app(role="public"))
    for name, value in session_cookies(business_id=BUSINESS_ID).items():
        client.cookies.set(name, value)
    with patch("booking.api.session._business_is_live", return_value=True):
        yield client


@pytest.fixture
def admin_client(session_env):
    """Public-role client holding only the admin cookie."""
    from fastapi.testclient import TestClient

    from booking.api.factory import create_app
    from tests.helpers import session_cookies

    client = TestClient(create_app(role="public"))
    for name, value in session_cookies(gate=False, admin=True).items():
        client.cookies.set(name, value)
    return client
