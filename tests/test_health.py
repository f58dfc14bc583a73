"""Health endpoint tests."""

from fastapi.testclient import TestClient

from booking.api.app import app

client = TestClient(app)


def test_health_returns_200():
    response = client.get("/health")
    assert response.status_code == 200


def test_health_returns_ok_status():
    response = client.get("/health")
    assert response.json() == {"status": "ok"}


def test_unknown_route_uses_error_envelope():
    response = client.get("/nope")
    assert response.status_code == 404
    assert response.json() == {"ok": False, "error": "Not Found"}
