"""
Unit tests for the gate service.
"""

import pytest
from fastapi import Request
from fastapi.testclient import TestClient

from service_gate.app.caching.tiered_cache import CachedResponse
from service_gate.app.gate import gated
from service_gate.app.main import GateService, create_app
from service_gate.app.storage.memory import MemoryBackend
from shared.test_helpers import FlakyBackend, ManualClock, TestEnvironment

PASSWORD = "correct horse"


def verify(username: str, password: str) -> bool:
    return password == PASSWORD


def build_service(clock=None, distributed=None, **overrides) -> GateService:
    return GateService(
        TestEnvironment.get_test_config(**overrides),
        verifier=verify,
        token_issuer=lambda account: f"token-{account}",
        clock=clock,
        distributed=distributed,
    )


def add_items_route(service: GateService, calls: list) -> None:
    @service.app.get("/api/v1/items")
    @gated(route_class="items")
    async def list_items(request: Request):
        calls.append(request.url.query)
        return CachedResponse.json({"items": [1, 2, 3]})


def without_request_id(body: dict) -> dict:
    return {k: v for k, v in body.items() if k != "request_id"}


class TestGateService:
    """Test cases for GateService."""

    @pytest.fixture
    def clock(self):
        return ManualClock()

    @pytest.fixture
    def service(self, clock):
        """Create GateService instance with a generous strict budget."""
        return build_service(clock=clock, strict_limit=50)

    @pytest.fixture
    def client(self, service):
        """Create test client."""
        with TestClient(service.app) as client:
            yield client

    def test_create_app(self):
        assert create_app().title == "Gate Service"

    def test_health_endpoint(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "gate"
        assert data["status"] == "ok"
        assert data["dependencies"] == {"local": "ok", "distributed": "disabled"}

    def test_health_reports_unreachable_distributed_store(self, clock):
        remote = FlakyBackend(MemoryBackend(clock=clock))
        service = build_service(clock=clock, distributed=remote)
        with TestClient(service.app) as client:
            assert client.get("/health").json()["dependencies"]["distributed"] == "ok"
            remote.failing = True
            assert client.get("/health").json()["dependencies"]["distributed"] == "unreachable"

    def test_login_survives_unreadable_lockout_state(self, clock):
        remote = FlakyBackend(MemoryBackend(clock=clock))
        remote.corrupt_keys.add("lockout:alice")
        service = build_service(clock=clock, distributed=remote)
        with TestClient(service.app) as client:
            bad = client.post("/api/v1/auth/login", json={"username": "alice", "password": "wrong"})
            assert bad.status_code == 401
            assert bad.json()["code"] == "AUTHENTICATION_ERROR"
            assert "lockout:alice" not in bad.text

            remote.corrupt_keys.add("lockout:alice")
            good = client.post("/api/v1/auth/login", json={"username": "alice", "password": PASSWORD})
            assert good.status_code == 200

    def test_metrics_endpoint(self, client):
        client.get("/health")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "http_requests_total" in response.text

    def test_security_headers(self, client):
        response = client.get("/health", headers={"X-Request-ID": "req-1"})
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["Referrer-Policy"] == "strict-origin-when-cross-origin"
        assert response.headers["X-Request-ID"] == "req-1"

    def test_login_success(self, client):
        response = client.post("/api/v1/auth/login", json={"username": "Alice", "password": PASSWORD})
        assert response.status_code == 200
        assert response.json() == {"access_token": "token-alice", "token_type": "Bearer"}
        assert response.headers["X-RateLimit-Limit"] == "50"

    def test_login_bad_credentials(self, client):
        response = client.post("/api/v1/auth/login", json={"username": "alice", "password": "wrong"})
        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_ERROR"

    def test_login_blank_username(self, client):
        response = client.post("/api/v1/auth/login", json={"username": "  ", "password": "x"})
        assert response.status_code == 422
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_locked_account_looks_like_bad_credentials(self, client, service):
        bad = None
        for _ in range(5):
            bad = client.post("/api/v1/auth/login", json={"username": "alice", "password": "wrong"})
            assert bad.status_code == 401

        locked = client.post("/api/v1/auth/login", json={"username": "alice", "password": PASSWORD})
        assert locked.status_code == 401
        assert without_request_id(locked.json()) == without_request_id(bad.json())
        assert "locked_until" not in locked.text

    def test_lock_expires(self, client, clock):
        for _ in range(5):
            client.post("/api/v1/auth/login", json={"username": "alice", "password": "wrong"})
        clock.advance(7200)
        response = client.post("/api/v1/auth/login", json={"username": "alice", "password": PASSWORD})
        assert response.status_code == 200

    def test_success_resets_failed_attempts(self, client, service):
        for _ in range(4):
            client.post("/api/v1/auth/login", json={"username": "alice", "password": "wrong"})
        client.post("/api/v1/auth/login", json={"username": "alice", "password": PASSWORD})
        client.post("/api/v1/auth/login", json={"username": "alice", "password": "wrong"})
        response = client.post("/api/v1/auth/login", json={"username": "alice", "password": PASSWORD})
        assert response.status_code == 200

    def test_login_is_strictly_throttled(self, clock):
        service = build_service(clock=clock)
        with TestClient(service.app) as client:
            for _ in range(5):
                response = client.post("/api/v1/auth/login", json={"username": "bob", "password": "wrong"})
                assert response.status_code == 401

            response = client.post("/api/v1/auth/login", json={"username": "carol", "password": PASSWORD})
            assert response.status_code == 429
            assert response.headers["Retry-After"] == "60"
            assert response.json()["code"] == "RATE_LIMIT_ERROR"

    def test_async_verifier(self, clock):
        async def verify_async(username: str, password: str) -> bool:
            return password == PASSWORD

        service = GateService(TestEnvironment.get_test_config(), verifier=verify_async, clock=clock)
        with TestClient(service.app) as client:
            response = client.post("/api/v1/auth/login", json={"username": "alice", "password": PASSWORD})
        assert response.status_code == 200
        assert response.json()["access_token"]

    def test_default_verifier_rejects(self, clock):
        service = GateService(TestEnvironment.get_test_config(), clock=clock)
        with TestClient(service.app) as client:
            response = client.post("/api/v1/auth/login", json={"username": "alice", "password": PASSWORD})
        assert response.status_code == 401

    def test_rate_limit_status(self, client):
        client.post("/api/v1/auth/login", json={"username": "alice", "password": "wrong"})
        response = client.get("/api/v1/ratelimit/status", params={"policy": "strict"})
        assert response.status_code == 200
        data = response.json()
        assert data["client_id"] == "testclient"
        assert data["count"] == 1
        assert data["remaining"] == 49

    def test_rate_limit_status_unknown_policy(self, client):
        response = client.get("/api/v1/ratelimit/status", params={"policy": "nope"})
        assert response.status_code == 422


class TestGatedRoutes:
    """Test cases for routes registered through the gate decorator."""

    @pytest.fixture
    def calls(self):
        return []

    @pytest.fixture
    def service(self, calls):
        service = build_service(clock=ManualClock(), general_limit=3)
        add_items_route(service, calls)
        return service

    @pytest.fixture
    def client(self, service):
        with TestClient(service.app) as client:
            yield client

    def test_second_request_is_served_from_cache(self, client, calls):
        first = client.get("/api/v1/items")
        second = client.get("/api/v1/items")

        assert first.status_code == 200
        assert first.json() == {"items": [1, 2, 3]}
        assert first.headers["X-Cache"] == "MISS"
        assert first.headers["X-RateLimit-Limit"] == "3"
        assert second.headers["X-Cache"] == "HIT"
        assert second.json() == first.json()
        assert len(calls) == 1

    def test_query_order_shares_cache_entry(self, client, calls):
        client.get("/api/v1/items?a=1&b=2")
        response = client.get("/api/v1/items?b=2&a=1")
        assert response.headers["X-Cache"] == "HIT"
        assert len(calls) == 1

    def test_cache_hits_are_not_throttled(self, client):
        client.get("/api/v1/items")
        for _ in range(10):
            assert client.get("/api/v1/items").status_code == 200

    def test_misses_are_throttled(self, client):
        for page in range(3):
            assert client.get(f"/api/v1/items?page={page}").status_code == 200
        response = client.get("/api/v1/items?page=99")
        assert response.status_code == 429
        assert "Retry-After" in response.headers

    def test_cache_stats(self, client):
        client.get("/api/v1/items")
        client.get("/api/v1/items")
        stats = client.get("/api/v1/cache/stats").json()
        assert stats["hits"] == 1
        assert stats["misses"] == 1
        assert stats["store"]["distributed"] is None

    def test_invalidate(self, client, service, calls):
        client.get("/api/v1/items")
        key = service.context.gate.key_codec.for_request("GET", "/api/v1/items", route_class="items")

        response = client.delete(f"/api/v1/cache/{key}")
        assert response.status_code == 200
        assert response.json() == {"key": key, "deleted": True}

        assert client.get("/api/v1/items").headers["X-Cache"] == "MISS"
        assert len(calls) == 2
