"""
Tests for health check endpoints.
"""

from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from app.main import app

client = TestClient(app)


def test_healthz_endpoint():
    """Test the basic health check endpoint."""
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "service": "infrastructure-healing-engine"}


def test_readyz_endpoint_memory_backend(monkeypatch):
    """In-memory storage needs no database and is always ready."""
    monkeypatch.setattr("app.routes.health.settings.STORAGE_BACKEND", "memory")

    response = client.get("/readyz")

    assert response.status_code == 200
    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["storage"] == {"ok": True, "backend": "memory"}
    assert data["checks"]["configuration"]["ok"] is True
    assert "database" not in data["checks"]


def test_readyz_endpoint_database_unhealthy(monkeypatch):
    """Test readiness endpoint when the database pool reports a failure."""
    monkeypatch.setattr("app.routes.health.settings.STORAGE_BACKEND", "postgres")
    monkeypatch.setattr("app.routes.health.settings.DATABASE_URL", "postgresql://localhost/healing")

    with patch(
        "app.routes.health.db_health_check",
        new=AsyncMock(return_value={"healthy": False, "error": "connection refused"}),
    ):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert data["checks"]["database"]["ok"] is False
    assert data["checks"]["database"]["error"] == "connection refused"


def test_readyz_endpoint_database_healthy(monkeypatch):
    monkeypatch.setattr("app.routes.health.settings.STORAGE_BACKEND", "postgres")
    monkeypatch.setattr("app.routes.health.settings.DATABASE_URL", "postgresql://localhost/healing")
    db_health = {
        "healthy": True,
        "connection_time_ms": 2.5,
        "pool_stats": {"pool_size": 5, "pool_available": 4, "pool_utilization_percent": 20.0},
    }

    with patch("app.routes.health.db_health_check", new=AsyncMock(return_value=db_health)):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is True
    assert data["checks"]["database"]["pool_size"] == 5
    assert data["checks"]["database"]["pool_available"] == 4


def test_readyz_endpoint_missing_database_url(monkeypatch):
    """Postgres storage without a connection string is a configuration issue."""
    monkeypatch.setattr("app.routes.health.settings.STORAGE_BACKEND", "postgres")
    monkeypatch.setattr("app.routes.health.settings.DATABASE_URL", None)

    with patch("app.routes.health.db_health_check", new=AsyncMock(return_value={"healthy": True})):
        response = client.get("/readyz")

    data = response.json()
    assert data["overall_ok"] is False
    assert "DATABASE_URL not set" in data["checks"]["configuration"]["issues"]


def test_database_health_without_postgres(monkeypatch):
    monkeypatch.setattr("app.routes.health.settings.STORAGE_BACKEND", "memory")

    response = client.get("/health/database")

    assert response.status_code == 200
    assert response.json()["pool"] == "not_used"


def test_pool_stats_not_initialized():
    """Test pool stats endpoint before the pool is created."""
    response = client.get("/health/pool-stats")

    assert response.json()["pool_health"] == "not_initialized"
