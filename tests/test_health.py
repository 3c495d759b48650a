"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - session store outage reports "unavailable" but stays healthy (degraded mode)
  - user directory outage makes the service unhealthy
  - No authentication required
"""

from __future__ import annotations

from cache.store import UnavailableSessionStore


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    resp = api_client.client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert data["components"] == {"app": "ok", "database": "ok", "session_store": "ok"}


def test_health_with_session_store_down(api_client):
    api_client.client.app.state.session_store = UnavailableSessionStore()
    data = api_client.client.get("/api/v1/health").json()
    assert data["status"] == "healthy"
    assert data["components"]["session_store"] == "unavailable"


def test_health_with_directory_down(api_client, monkeypatch):
    monkeypatch.setattr(api_client.user_store, "ping", lambda: False)
    data = api_client.client.get("/api/v1/health").json()
    assert data["status"] == "unhealthy"
    assert data["components"]["database"] == "error"


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    resp = api_client.client.get("/api/v1/health", headers={})
    assert resp.status_code == 200
