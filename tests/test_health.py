"""
tests/test_health.py -- Integration tests for GET /api/v1/health.

Covers:
  - 200 response with status, version, and components fields
  - components.database reports 'unavailable' and status 'degraded' when the
    database does not answer
  - No authentication required
"""

from __future__ import annotations


def test_health_returns_200_with_components(api_client):
    """Health endpoint returns 200 with status, version, and components."""
    resp = api_client.get("/api/v1/health")
    assert resp.status_code == 200
    data = resp.json()
    assert data["status"] == "ok"
    assert "version" in data
    assert data["components"]["database"] == "ok"


def test_health_reports_database_outage(api_client, db, monkeypatch):
    monkeypatch.setattr(db, "ping", lambda: False)
    data = api_client.get("/api/v1/health").json()
    assert data["status"] == "degraded"
    assert data["components"]["database"] == "unavailable"


def test_health_no_auth_required(api_client):
    """Health endpoint is accessible without any authentication headers."""
    resp = api_client.get("/api/v1/health", headers={})
    assert resp.status_code == 200


def test_unknown_host_rejected(api_client):
    resp = api_client.get("/api/v1/health", headers={"Host": "evil.example.com"})
    assert resp.status_code == 400
