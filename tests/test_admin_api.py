"""Tests for the operational admin endpoints and app wiring."""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient
from unittest.mock import Mock

from asdf_gateway.app.core.clock import ManualClock
from asdf_gateway.app.core.config import Settings
from asdf_gateway.app.core.context import ResilienceContext
from asdf_gateway.app.exceptions import CircuitOpenError, RateLimitExceededError
from asdf_gateway.app.main import create_app
from asdf_gateway.app.services.event_bus import EventType


ADMIN_TOKEN = "s3cret-admin-token"
ADMIN_HEADERS = {"Authorization": f"Bearer {ADMIN_TOKEN}"}


def make_context(**settings) -> ResilienceContext:
    settings.setdefault("rate_limit_enabled", False)
    settings.setdefault("admin_token", ADMIN_TOKEN)
    return ResilienceContext.from_settings(Settings(**settings), audit=Mock(), clock=ManualClock())


@pytest.fixture
def context():
    return make_context()


@pytest.fixture
def client(context):
    with TestClient(create_app(context), headers=ADMIN_HEADERS) as client:
        yield client


class TestHealth:
    def test_health_ok(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["circuits"]["helius"] == "closed"
        assert data["open_circuits"] == []

    def test_health_degraded_with_open_circuit(self, client, context):
        context.registry.force_circuit_state("helius", "open")

        data = client.get("/health").json()

        assert data["status"] == "degraded"
        assert data["open_circuits"] == ["helius"]

    def test_lifespan_starts_context(self, context):
        with TestClient(create_app(context)):
            assert context.started
        assert not context.started

    def test_shared_http_client_lives_for_lifespan(self):
        app = create_app(settings=Settings(rate_limit_enabled=False, admin_token=ADMIN_TOKEN))
        context = app.state.resilience
        assert context.http_client is None

        with TestClient(app):
            http_client = context.http_client
            assert isinstance(http_client, httpx.AsyncClient)
            assert context.registry.create_http_circuit("rpc")._http_client is http_client

        assert http_client.is_closed
        assert context.http_client is None


class TestAdminAuth:
    def test_missing_token_is_rejected(self, context):
        client = TestClient(create_app(context))

        response = client.post("/admin/circuits/helius/state", json={"state": "open"})

        assert response.status_code == 401
        assert context.registry.get_circuit_status("helius")["state"] == "closed"

    def test_wrong_token_is_rejected(self, context):
        context.rate_limiter.record_violation("1.2.3.4")
        client = TestClient(create_app(context), headers={"Authorization": "Bearer nope"})

        assert client.delete("/admin/rate-limit/bans/1.2.3.4").status_code == 401
        assert client.get("/admin/circuits").status_code == 401
        assert context.rate_limiter.get_violation_details("1.2.3.4") is not None

    def test_unconfigured_token_refuses_everyone(self):
        context = make_context(admin_token="")
        client = TestClient(create_app(context), headers={"Authorization": "Bearer "})

        assert client.get("/admin/circuits").status_code == 401

    def test_valid_token_is_accepted(self, client):
        response = client.post("/admin/circuits/helius/state", json={"state": "open"})

        assert response.status_code == 200
        assert response.json()["state"] == "open"

    def test_health_needs_no_token(self, context):
        assert TestClient(create_app(context)).get("/health").status_code == 200


class TestCircuitEndpoints:
    def test_list_circuits(self, client):
        data = client.get("/admin/circuits").json()

        assert set(data) == {"helius", "solana-rpc", "external-api"}
        assert "fallback" not in data["helius"]["config"]

    def test_get_circuit(self, client):
        data = client.get("/admin/circuits/helius").json()

        assert data["name"] == "helius"
        assert data["state"] == "closed"
        assert data["config"]["failure_threshold"] == 3

    def test_get_unknown_circuit(self, client):
        assert client.get("/admin/circuits/nope").status_code == 404

    def test_force_state(self, client):
        response = client.post("/admin/circuits/helius/state", json={"state": "open"})

        assert response.status_code == 200
        assert response.json()["state"] == "open"

        response = client.post("/admin/circuits/helius/state", json={"state": "closed"})
        assert response.json()["state"] == "closed"

    def test_force_state_validation(self, client):
        assert client.post("/admin/circuits/helius/state", json={"state": "half_open"}).status_code == 422
        assert client.post("/admin/circuits/nope/state", json={"state": "open"}).status_code == 404

    def test_reset_circuit(self, client, context):
        context.registry.force_circuit_state("helius", "open")

        response = client.post("/admin/circuits/helius/reset")

        assert response.json()["state"] == "closed"
        assert client.post("/admin/circuits/nope/reset").status_code == 404

    def test_remove_circuit(self, client):
        assert client.delete("/admin/circuits/helius").json() == {"removed": "helius"}
        assert client.get("/admin/circuits/helius").status_code == 404
        assert client.delete("/admin/circuits/helius").status_code == 404

    def test_circuit_stats(self, client, context):
        context.registry.force_circuit_state("helius", "open")

        data = client.get("/admin/circuits/stats").json()

        assert data["total_circuits"] == 3
        assert data["by_state"]["open"] == 1


class TestRateLimitEndpoints:
    def test_stats(self, client):
        data = client.get("/admin/rate-limit/stats").json()

        assert data["allowed"] == 0
        assert data["allow_rate"] == 100.0

    def test_violations_and_unban(self, client, context):
        for _ in range(50):
            context.rate_limiter.record_violation("198.51.100.4")

        details = client.get("/admin/rate-limit/violations/198.51.100.4").json()
        assert details["count"] == 50
        assert details["ban"] == {"banned": True, "permanent": True, "expires_in": -1}

        bans = client.get("/admin/rate-limit/bans").json()
        assert len(bans["permanent"]) == 1

        response = client.delete("/admin/rate-limit/bans/198.51.100.4")
        assert response.json() == {"unbanned": True, "permanent": True}
        assert context.rate_limiter.is_banned("198.51.100.4").banned is False

    def test_unknown_identifier(self, client):
        assert client.get("/admin/rate-limit/violations/unknown").status_code == 404
        assert client.delete("/admin/rate-limit/bans/unknown").status_code == 404

    def test_unban_clears_plain_violations(self, client, context):
        context.rate_limiter.record_violation("198.51.100.5")

        response = client.delete("/admin/rate-limit/bans/198.51.100.5")

        assert response.json() == {"unbanned": True, "permanent": False}
        assert context.rate_limiter.get_violation_details("198.51.100.5") is None


class TestEventEndpoints:
    def test_history(self, context):
        bus = context.event_bus
        asyncio.run(bus.publish(EventType.CIRCUIT_RESET, {"circuit": "a"}))
        asyncio.run(bus.publish(EventType.WEBHOOK_RECEIVED, {"source": "helius"}))

        with TestClient(create_app(context), headers=ADMIN_HEADERS) as client:
            events = client.get("/admin/events/history").json()
            filtered = client.get(
                "/admin/events/history", params={"event_type": EventType.CIRCUIT_RESET}
            ).json()
            limited = client.get("/admin/events/history", params={"limit": 1}).json()

        assert [e["type"] for e in events] == [EventType.WEBHOOK_RECEIVED, EventType.CIRCUIT_RESET]
        assert [e["data"] for e in filtered] == [{"circuit": "a"}]
        assert len(limited) == 1

    def test_metrics(self, client):
        data = client.get("/admin/events/metrics").json()

        assert data["total_handlers"] == 0
        assert data["config"]["max_events_per_second"] == 100


class TestExceptionHandlers:
    def make_client(self, **settings):
        app = create_app(make_context(**settings))

        @app.get("/raise/circuit")
        async def raise_circuit():
            raise CircuitOpenError("helius", retry_after=12.2)

        @app.get("/raise/limit")
        async def raise_limit():
            raise RateLimitExceededError(retry_after=30)

        @app.get("/raise/boom")
        async def raise_boom():
            raise RuntimeError("boom")

        return TestClient(app, raise_server_exceptions=False)

    def test_circuit_open_maps_to_503(self):
        response = self.make_client().get("/raise/circuit")

        assert response.status_code == 503
        assert response.headers["Retry-After"] == "13"
        assert response.json()["error"] == "circuit_open"

    def test_rate_limit_maps_to_429(self):
        response = self.make_client().get("/raise/limit")

        assert response.status_code == 429
        assert response.headers["Retry-After"] == "30"
        assert response.json()["retryAfter"] == 30

    def test_unhandled_exception_hides_details(self):
        response = self.make_client().get("/raise/boom")

        assert response.status_code == 500
        assert response.json()["message"] == "Internal server error"

    def test_debug_mode_includes_message(self):
        response = self.make_client(debug=True).get("/raise/boom")

        assert response.status_code == 500
        assert response.json()["message"] == "boom"
        assert response.json()["exception_type"] == "RuntimeError"


class TestRateLimitedApp:
    def test_middleware_enabled_by_settings(self):
        context = make_context(rate_limit_enabled=True)

        with TestClient(create_app(context), headers=ADMIN_HEADERS) as client:
            statuses = [client.get("/admin/circuits").status_code for _ in range(6)]
            health = client.get("/health")

        # anonymous tier allows 5 per second
        assert statuses == [200] * 5 + [429]
        assert health.status_code == 200
        assert "X-RateLimit-Remaining" not in health.headers
