"""Tests for the HTTP API."""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from fastapi import status

from portfolio_analytics.api.dependencies import analytics_service
from portfolio_analytics.core.exceptions import AlreadyCalculating, ArtifactUnavailable


@pytest.fixture
def api(client, service):
    """Test client whose analytics endpoints use the seeded in-memory service."""
    client.app.dependency_overrides[analytics_service] = lambda: service
    yield client
    client.app.dependency_overrides.clear()


def _override_with(client, **methods) -> AsyncMock:
    mock = AsyncMock()
    for name, side_effect in methods.items():
        getattr(mock, name).side_effect = side_effect
    client.app.dependency_overrides[analytics_service] = lambda: mock
    return mock


class TestHealth:
    """Tests for the health endpoint."""

    def test_memory_backend_is_healthy(self, client):
        response = client.get("/health")

        assert response.status_code == status.HTTP_200_OK
        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"] == {}

    def test_request_id_is_returned(self, client):
        response = client.get("/health", headers={"X-Request-ID": "abc-123"})
        assert response.headers["X-Request-ID"] == "abc-123"


class TestAnalyticsRoutes:
    """Tests for analytics endpoints."""

    def test_position_risk(self, api):
        response = api.get("/analytics/risk/aapl", params={"days": 365})

        assert response.status_code == status.HTTP_200_OK
        body = response.json()
        assert body["data"]["subject"] == "AAPL"
        assert body["cache"]["status"] == "fresh"
        assert body["cache"]["is_stale"] is False

    def test_unknown_ticker_is_404(self, api):
        response = api.get("/analytics/risk/UNKNOWN")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"] == "NO_DATA"

    def test_days_out_of_range_is_422(self, api):
        response = api.get("/analytics/risk/AAPL", params={"days": 10})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT

    def test_empty_portfolio_is_422(self, api):
        response = api.get("/analytics/portfolios/2/risk")

        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT
        assert response.json()["error"] == "INSUFFICIENT_DATA"

    def test_correlations(self, api):
        response = api.get("/analytics/portfolios/1/correlations")

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["data"]["tickers"] == ["AAPL", "MSFT"]

    def test_invalidate_then_health(self, api):
        api.get("/analytics/portfolios/1/correlations")

        invalidated = api.post("/analytics/portfolios/1/invalidate")
        health = api.get("/analytics/cache/health")

        assert invalidated.json() == {"subject": "1", "invalidated": 1}
        assert health.json() == {"kinds": {"correlations": {"stale": 1}}, "total": 1}

    def test_regime_without_model_is_404(self, api):
        response = api.get("/analytics/regime", params={"horizon": 5})
        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_regime_horizon_validated(self, api):
        response = api.get("/analytics/regime", params={"horizon": 31})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT

    def test_volatility_forecast(self, api):
        response = api.get("/analytics/volatility/VOL", params={"horizon": 5})

        assert response.status_code == status.HTTP_200_OK
        assert len(response.json()["data"]["points"]) == 5

    def test_concurrent_computation_is_409(self, client):
        _override_with(client, get_risk=AlreadyCalculating("risk for AAPL is being calculated"))

        response = client.get("/analytics/risk/AAPL")

        assert response.status_code == status.HTTP_409_CONFLICT
        assert response.json()["error"] == "ALREADY_CALCULATING"
        client.app.dependency_overrides.clear()

    def test_backoff_is_503_with_retry_after(self, client):
        _override_with(
            client,
            get_volatility_forecast=ArtifactUnavailable(
                "volatility_forecast for AAPL is unavailable",
                retry_after=12.2,
                last_error="optimizer failed",
            ),
        )

        response = client.get("/analytics/volatility/AAPL")

        assert response.status_code == status.HTTP_503_SERVICE_UNAVAILABLE
        assert response.headers["Retry-After"] == "13"
        assert response.json()["details"]["last_error"] == "optimizer failed"
        client.app.dependency_overrides.clear()


class TestJobRoutes:
    """Tests for job management endpoints."""

    def test_list_jobs(self, client):
        response = client.get("/jobs")

        assert response.status_code == status.HTTP_200_OK
        names = {job["name"] for job in response.json()}
        assert {
            "warm_caches",
            "generate_forecasts",
            "train_hmm_model",
            "generate_regime_forecasts",
            "create_daily_risk_snapshots",
            "cleanup",
        } <= names

    def test_unknown_job_runs_is_404(self, client):
        response = client.get("/jobs/nope/runs")

        assert response.status_code == status.HTTP_404_NOT_FOUND
        assert response.json()["error"] == "NOT_FOUND"

    def test_run_unknown_job_is_404(self, client):
        response = client.post("/jobs/nope/run")
        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_update_schedule(self, client):
        response = client.put("/jobs/cleanup/schedule", json={"schedule": "0 15 2 * * *"})

        assert response.status_code == status.HTTP_200_OK
        assert response.json()["schedule"] == "0 15 2 * * *"

    def test_invalid_schedule_is_422(self, client):
        response = client.put("/jobs/cleanup/schedule", json={"schedule": "0 2 * * *"})
        assert response.status_code == status.HTTP_422_UNPROCESSABLE_CONTENT

    def test_manual_run_is_recorded(self, client):
        response = client.post("/jobs/cleanup/run")

        assert response.status_code == status.HTTP_200_OK
        assert response.json() == {"name": "cleanup", "status": "success"}

        runs = client.get("/jobs/cleanup/runs").json()
        assert runs[0]["status"] == "success"
