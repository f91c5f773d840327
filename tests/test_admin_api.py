"""Tests for the administrative HTTP endpoints and error mapping."""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from apiguard.app.api.admin import get_engine, reset_engine
from apiguard.app.core.config import settings
from apiguard.app.exceptions import (
    BackendFailureError,
    DuplicateSubmitError,
    IdempotentConflictError,
)
from apiguard.app.main import create_app
from apiguard.app.ratelimit.engine import RateLimitEngine
from apiguard.app.ratelimit.models import RateLimitPolicy

ADMIN_TOKEN = "test-admin-token"


@pytest.fixture
def engine(local_store, clock):
    return RateLimitEngine(store=local_store, clock=clock)


@pytest.fixture
def app(engine):
    application = create_app()
    application.dependency_overrides[get_engine] = lambda: engine

    @application.get("/orders")
    async def create_order(kind: str):
        policy = RateLimitPolicy(permits=1, window_seconds=30, algorithm="FIXED_WINDOW")
        if kind == "rate":
            await engine.check_or_raise("apiguard:rate:api:orders", policy)
            await engine.check_or_raise("apiguard:rate:api:orders", policy)
        if kind == "duplicate":
            raise DuplicateSubmitError("apiguard:duplicate:user:u-1:orders", 0, 5, 4)
        if kind == "pending":
            raise IdempotentConflictError("apiguard:idempotent:orders:u-1:abc", "PENDING", 0)
        if kind == "backend":
            raise BackendFailureError("get", "apiguard:idempotent:orders:u-1:abc")
        if kind == "crash":
            raise RuntimeError("secret internals")
        return {"ok": True}

    yield application
    reset_engine()


@pytest.fixture
def client(app):
    return TestClient(app, raise_server_exceptions=False)


@pytest.fixture
def auth_headers(monkeypatch):
    monkeypatch.setattr(settings, "admin_token", ADMIN_TOKEN)
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}


class TestHealth:
    """Tests for the health endpoint."""

    def test_healthy(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"
        assert response.json()["storage_type"] == "memory"

    def test_unhealthy_backend(self, app, client):
        store = MagicMock()
        store.storage_type = "redis"
        store.ping = AsyncMock(side_effect=BackendFailureError("ping"))
        app.dependency_overrides[get_engine] = lambda: RateLimitEngine(store=store)

        response = client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "unhealthy"


class TestResetEndpoint:
    """Tests for the rate limit reset endpoint."""

    def test_reset_existing_key(self, client, engine, auth_headers):
        policy = RateLimitPolicy(permits=1, window_seconds=60)
        key = "apiguard:rate:user:u-1:orders.create"

        asyncio.run(engine.check(key, policy))
        response = client.delete(f"/admin/rate-limits/{key}", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {"key": key, "reset": True, "existed": True}
        assert asyncio.run(engine.check(key, policy)).allowed is True

    def test_reset_missing_key(self, client, auth_headers):
        response = client.delete("/admin/rate-limits/apiguard:rate:api:none", headers=auth_headers)
        assert response.json()["existed"] is False

    def test_requires_token(self, client, auth_headers):
        response = client.delete("/admin/rate-limits/k", headers={"Authorization": "Bearer wrong"})
        assert response.status_code == 401

        response = client.delete("/admin/rate-limits/k")
        assert response.status_code == 401

    def test_disabled_without_configured_token(self, client, monkeypatch):
        monkeypatch.setattr(settings, "admin_token", "")
        response = client.delete("/admin/rate-limits/k", headers={"Authorization": "Bearer "})
        assert response.status_code == 403


class TestMetricsEndpoint:
    """Tests for the Prometheus endpoint."""

    def test_metrics_after_denial(self, client, auth_headers):
        client.get("/orders", params={"kind": "rate"})

        response = client.get("/metrics", headers=auth_headers)

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'apiguard_decisions_total{gate="rate_limit",decision="denied"} 1' in response.text

    def test_metrics_requires_token(self, client, auth_headers):
        assert client.get("/metrics").status_code == 401


class TestErrorMapping:
    """Tests for guard exceptions rendered as HTTP responses."""

    def test_rate_limit_exceeded(self, client):
        response = client.get("/orders", params={"kind": "rate"})

        assert response.status_code == 429
        body = response.json()
        assert body["error"] == "RATE_LIMIT_EXCEEDED"
        assert body["limit"] == 1
        assert body["window_seconds"] == 30
        assert response.headers["X-RateLimit-Limit"] == "1"
        assert response.headers["X-RateLimit-Remaining"] == "0"
        assert "Retry-After" in response.headers

    def test_duplicate_submit(self, client):
        response = client.get("/orders", params={"kind": "duplicate"})

        assert response.status_code == 429
        assert response.json()["error"] == "DUPLICATE_SUBMIT_DETECTED"
        assert response.headers["Retry-After"] == "4"

    def test_idempotent_conflict(self, client):
        response = client.get("/orders", params={"kind": "pending"})

        assert response.status_code == 409
        assert response.json()["status"] == "PENDING"

    def test_backend_failure_hides_details(self, client):
        response = client.get("/orders", params={"kind": "backend"})

        assert response.status_code == 503
        assert response.json() == {
            "error": "STORAGE_BACKEND_FAILURE",
            "message": "Storage backend unavailable during get",
        }

    def test_unhandled_exception(self, client):
        response = client.get("/orders", params={"kind": "crash"})

        assert response.status_code == 500
        assert "secret" not in response.text
