"""Tests for app factory and role-based routing."""

from unittest.mock import patch

from fastapi.testclient import TestClient

from booking.api.factory import create_app
from booking.domain.outbox import SweepReport


class TestPublicRole:
    """Tests for APP_ROLE=public."""

    def test_health_available(self):
        app = create_app(role="public")
        client = TestClient(app)
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_tasks_not_mounted(self):
        app = create_app(role="public")
        client = TestClient(app)
        response = client.get("/tasks/health")
        assert response.status_code == 404

    def test_outbox_sweep_not_mounted(self):
        """The sweep must not be reachable from the public service."""
        app = create_app(role="public")
        client = TestClient(app)
        with patch("booking.api.routes.tasks_outbox.verify_task_auth", return_value=True):
            response = client.post("/tasks/outbox/sweep")
        assert response.status_code == 404

    def test_webhook_mounted(self):
        app = create_app(role="public")
        client = TestClient(app)
        response = client.get("/api/webhooks/whatsapp")
        assert response.status_code != 404


class TestWorkerRole:
    """Tests for APP_ROLE=worker."""

    def test_health_available(self):
        app = create_app(role="worker")
        client = TestClient(app)
        response = client.get("/health")
        assert response.status_code == 200

    def test_tasks_mounted(self):
        app = create_app(role="worker")
        client = TestClient(app)
        response = client.get("/tasks/health")
        assert response.status_code == 200
        assert response.json()["subsystem"] == "tasks"

    def test_sweep_requires_auth(self):
        app = create_app(role="worker")
        client = TestClient(app)
        response = client.post("/tasks/outbox/sweep")
        assert response.status_code == 401
        assert response.json() == {"ok": False, "error": "Unauthorized"}

    def test_sweep_with_auth(self):
        report = SweepReport(claimed=3, sent=1, rescheduled=1, failed=1)
        with (
            patch("booking.api.routes.tasks_outbox.verify_task_auth", return_value=True),
            patch("booking.api.routes.tasks_outbox.sweep_due", return_value=report) as sweep,
        ):
            app = create_app(role="worker")
            client = TestClient(app)
            response = client.post("/tasks/outbox/sweep?batch=10")

        assert response.status_code == 200
        assert response.json() == {
            "ok": True,
            "claimed": 3,
            "sent": 1,
            "rescheduled": 1,
            "failed": 1,
        }
        sweep.assert_called_once_with(10)

    def test_sweep_batch_bounds(self):
        with patch("booking.api.routes.tasks_outbox.verify_task_auth", return_value=True):
            app = create_app(role="worker")
            client = TestClient(app)
            response = client.post("/tasks/outbox/sweep?batch=500")
        assert response.status_code == 400

    def test_role_from_env(self, monkeypatch):
        monkeypatch.setenv("APP_ROLE", "worker")
        client = TestClient(create_app())
        assert client.get("/tasks/health").status_code == 200


class TestCorrelationId:
    """Tests for correlation ID middleware."""

    def test_generates_correlation_id(self):
        app = create_app(role="public")
        client = TestClient(app)
        response = client.get("/health")
        assert "X-Correlation-ID" in response.headers
        cid = response.headers["X-Correlation-ID"]
        assert len(cid) == 32
        int(cid, 16)

    def test_preserves_incoming_correlation_id(self):
        app = create_app(role="public")
        client = TestClient(app)
        response = client.get("/health", headers={"X-Correlation-ID": "test-123"})
        assert response.headers["X-Correlation-ID"] == "test-123"

    def test_replaces_oversized_correlation_id(self):
        app = create_app(role="public")
        client = TestClient(app)
        response = client.get("/health", headers={"X-Correlation-ID": "x" * 500})
        assert len(response.headers["X-Correlation-ID"]) == 32

    def test_error_responses_carry_correlation_id(self):
        app = create_app(role="public")
        client = TestClient(app)
        response = client.get("/api/clients", headers={"X-Correlation-ID": "err-1"})
        assert response.status_code == 401
        assert response.headers["X-Correlation-ID"] == "err-1"
