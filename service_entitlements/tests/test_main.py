"""
Unit tests for Entitlements main service.
"""

import pytest
from fastapi.testclient import TestClient

from shared.config import get_config
from service_entitlements.app.main import EntitlementsService
from service_entitlements.app.store.memory import InMemoryDocumentStore


class TestEntitlementsService:
    """Test cases for EntitlementsService."""

    @pytest.fixture
    def entitlements_service(self):
        """Create EntitlementsService instance."""
        return EntitlementsService(
            config=get_config("entitlements", 8011, transaction_base_delay=0.0),
            store=InMemoryDocumentStore(),
        )

    @pytest.fixture
    def client(self, entitlements_service):
        """Create test client with the service lifespan running."""
        with TestClient(entitlements_service.app) as client:
            yield client

    @pytest.fixture
    def user_headers(self):
        return {"X-User-Id": "user-123"}

    def test_root_endpoint(self, client):
        """Test root endpoint."""
        response = client.get("/")
        assert response.status_code == 200

        data = response.json()
        assert data["service"] == "entitlements"
        assert "atomic_consume" in data["capabilities"]

    def test_health_endpoint(self, client):
        """Test health endpoint."""
        response = client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "ok"
        assert data["dependencies"] == {"store": "ok"}

    def test_request_id_is_echoed(self, client):
        """Test correlation header."""
        response = client.get("/", headers={"X-Request-Id": "req-42"})
        assert response.headers["X-Request-Id"] == "req-42"

    def test_list_plans(self, client):
        """Test plan listing."""
        response = client.get("/plans")
        assert response.status_code == 200

        plans = {plan["id"]: plan for plan in response.json()["plans"]}
        assert plans["free"]["quotas"]["aiMessages"] == 5
        assert plans["premium-monthly"]["quotas"]["pdfExports"] == -1
        assert plans["pro-yearly"]["billing_period"] == "yearly"

    def test_consume_until_denied(self, client, user_headers):
        """Test the free-tier limit over HTTP."""
        for expected in range(1, 6):
            response = client.post("/entitlements/consume", json={"action": "aiMessages"}, headers=user_headers)
            assert response.status_code == 200
            assert response.json()["allowed"] is True
            assert response.json()["used"] == expected

        response = client.post("/entitlements/consume", json={"action": "aiMessages"}, headers=user_headers)
        data = response.json()
        assert data["allowed"] is False
        assert "(5/5)" in data["reason"]
        assert data["remaining"] == 0

    def test_check_does_not_consume(self, client, user_headers):
        """Test the peek endpoint."""
        for _ in range(3):
            response = client.post("/entitlements/check", json={"action": "PDF_EXPORT"}, headers=user_headers)
            assert response.json()["allowed"] is True

        usage = client.get("/entitlements/usage", headers=user_headers).json()
        assert usage["usage"]["pdfExports"] == 0

    def test_unknown_action_is_rejected(self, client, user_headers):
        """Test action validation."""
        response = client.post("/entitlements/consume", json={"action": "videoExports"}, headers=user_headers)
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_user_id_that_cannot_address_a_document_is_rejected(self, client):
        """Test that a malformed identity is a client error, not a server error."""
        headers = {"X-User-Id": "team/u1"}

        for path in ("/entitlements/consume", "/entitlements/check"):
            response = client.post(path, json={"action": "aiMessages"}, headers=headers)
            assert response.status_code == 400
            assert response.json()["code"] == "VALIDATION_ERROR"

        response = client.get("/entitlements/usage", headers=headers)
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_consume_without_user_is_denied(self, client):
        """Test consume with no identity header."""
        response = client.post("/entitlements/consume", json={"action": "aiMessages"})
        assert response.status_code == 200
        assert response.json()["allowed"] is False
        assert response.json()["reason"] == "unauthenticated"

    def test_usage_without_user_is_default_view(self, client):
        """Test the usage snapshot with no identity header."""
        response = client.get("/entitlements/usage")
        assert response.status_code == 200

        data = response.json()
        assert data["user_id"] is None
        assert data["degraded"] is True
        assert data["tier"]["id"] == "free"

    def test_change_plan_resets_usage(self, client, user_headers):
        """Test plan switch over HTTP."""
        for _ in range(3):
            client.post("/entitlements/consume", json={"action": "aiMessages"}, headers=user_headers)

        response = client.post("/subscriptions/plan", json={"tier_id": "pro-monthly"}, headers=user_headers)
        assert response.status_code == 200
        assert response.json()["tier_id"] == "pro-monthly"
        assert response.json()["state"] == "active_paid"

        usage = client.get("/entitlements/usage", headers=user_headers).json()
        assert usage["tier"]["id"] == "pro-monthly"
        assert usage["usage"]["aiMessages"] == 0
        assert usage["limits"]["aiMessages"] == 500

    def test_change_plan_without_user_is_unauthorized(self, client):
        """Test plan switch with no identity header."""
        response = client.post("/subscriptions/plan", json={"tier_id": "pro-monthly"})
        assert response.status_code == 401
        assert response.json()["code"] == "UNAUTHENTICATED"

    def test_cancel_plan(self, client, user_headers):
        """Test cancellation with and without a body."""
        client.post("/subscriptions/plan", json={"tier_id": "pro-monthly"}, headers=user_headers)

        response = client.post("/subscriptions/cancel", json={"at_period_end": True}, headers=user_headers)
        assert response.json()["state"] == "cancelled"
        assert response.json()["tier_id"] == "pro-monthly"

        response = client.post("/subscriptions/cancel", headers=user_headers)
        assert response.status_code == 200
        assert response.json()["tier_id"] == "free"

    def test_purchase(self, client, user_headers):
        """Test billing triggers."""
        response = client.post(
            "/billing/purchase",
            json={"product_id": "premium-yearly", "success": False},
            headers=user_headers
        )
        assert response.json() == {"applied": False, "subscription": None}

        response = client.post(
            "/billing/purchase",
            json={"product_id": "premium-yearly", "success": True, "transaction_id": "txn-9"},
            headers=user_headers
        )
        data = response.json()
        assert data["applied"] is True
        assert data["subscription"]["tier_id"] == "premium-yearly"

    def test_metrics_endpoint(self, client, user_headers):
        """Test Prometheus exposition."""
        client.post("/entitlements/consume", json={"action": "aiMessages"}, headers=user_headers)

        response = client.get("/metrics")
        assert response.status_code == 200
        assert "entitlement_checks_total" in response.text
        assert "http_requests_total" in response.text
