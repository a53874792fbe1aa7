"""
Tests for health check endpoints.
"""

from fastapi.testclient import TestClient

from portfolio_api.main import app

client = TestClient(app)


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "portfolio-api"


def test_readyz_endpoint_redis_healthy(container, monkeypatch):
    """Test readiness endpoint when every Redis handle answers."""
    monkeypatch.setattr(app.state, "container", container, raising=False)

    response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ready"
    checks = data["checks"]
    assert checks["redis:primary"]["ok"] is True
    assert checks["dispatch_queue"]["enabled"] is False
    assert checks["scheduler"]["configured"] is True


def test_readyz_endpoint_redis_unhealthy(container, redis_handle, monkeypatch):
    """Test readiness endpoint when Redis is down."""
    redis_handle.healthy = False
    monkeypatch.setattr(app.state, "container", container, raising=False)

    response = client.get("/readyz")

    assert response.status_code == 503
    data = response.json()
    assert data["status"] == "not_ready"
    assert data["checks"]["redis:primary"]["ok"] is False


def test_readyz_reports_mirror_handle(container, mirror_handle, monkeypatch):
    """A mirror handle that is down makes the service not ready."""
    mirror_handle.healthy = False
    container.extra_handles.append(mirror_handle)
    monkeypatch.setattr(app.state, "container", container, raising=False)

    response = client.get("/readyz")

    assert response.status_code == 503
    checks = response.json()["checks"]
    assert checks["redis:primary"]["ok"] is True
    assert checks["redis:mirror"]["ok"] is False
