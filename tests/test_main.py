"""
Tests for the application entry points that need no services.
"""

from fastapi.testclient import TestClient

from tokengate.config import settings


class TestRoot:
    """GET /."""

    def test_root(self, app):
        response = TestClient(app).get("/")
        assert response.status_code == 200
        assert response.json() == {
            "service": settings.api_title,
            "version": settings.api_version,
            "status": "running",
        }


class TestMetricsEndpoint:
    """GET /metrics."""

    def test_exposes_prometheus_text(self, app):
        client = TestClient(app)
        client.get("/")

        response = client.get("/metrics")
        assert response.status_code == 200
        assert "tokengate_http_requests_total" in response.text

    def test_disabled(self, app, monkeypatch):
        monkeypatch.setattr(settings, "metrics_enabled", False)
        assert TestClient(app).get("/metrics").status_code == 404
