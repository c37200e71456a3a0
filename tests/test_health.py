"""Tests for health check API endpoints."""

from __future__ import annotations

from unittest.mock import AsyncMock, patch

from fastapi import status
from fastapi.testclient import TestClient

from portfolio_analytics.api.routes import health


class TestHealthEndpoint:
    """Tests for GET /health."""

    def test_health_returns_200(self, client: TestClient):
        """GET /health returns 200 OK."""
        response = client.get("/health")
        assert response.status_code == status.HTTP_200_OK

    def test_health_returns_version(self, client: TestClient):
        """GET /health returns version field."""
        response = client.get("/health")
        data = response.json()
        assert data["version"] == health.settings.app_version

    def test_database_down_is_unhealthy(self, client: TestClient, monkeypatch):
        """A failing database check marks the service unhealthy."""
        monkeypatch.setattr(health.settings, "storage_backend", "database")
        with patch.object(health, "db_healthcheck", AsyncMock(return_value=False)):
            response = client.get("/health")

        data = response.json()
        assert data["status"] == "unhealthy"
        assert data["checks"] == {"database": False}

    def test_lock_store_down_is_degraded(self, client: TestClient, monkeypatch):
        """A failing Valkey check with a healthy database is degraded."""
        monkeypatch.setattr(health.settings, "storage_backend", "database")
        monkeypatch.setattr(health.settings, "scheduler_distributed_lock", True)
        with (
            patch.object(health, "db_healthcheck", AsyncMock(return_value=True)),
            patch.object(health, "valkey_healthcheck", AsyncMock(return_value=False)),
        ):
            response = client.get("/health")

        data = response.json()
        assert data["status"] == "degraded"
        assert data["checks"] == {"database": True, "valkey": False}
