"""
Integration tests for the entitlement flow.

Drives the ASGI app in-process over httpx against the in-memory store, the
way a client app would: consume, hit the limit, upgrade, consume again.
"""

import asyncio

import httpx
import pytest

from shared.config import get_config
from service_entitlements.app.main import EntitlementsService
from service_entitlements.app.store.memory import InMemoryDocumentStore


class TestEntitlementsFlow:
    """Integration tests for Entitlements service flow."""

    @pytest.fixture
    def service(self):
        return EntitlementsService(
            config=get_config("entitlements", 8011, transaction_base_delay=0.0),
            store=InMemoryDocumentStore(),
        )

    @pytest.fixture
    def headers(self):
        return {"X-User-Id": "test-user-1"}

    def _client(self, service):
        transport = httpx.ASGITransport(app=service.app)
        return httpx.AsyncClient(transport=transport, base_url="http://entitlements")

    @pytest.mark.asyncio
    async def test_limit_then_upgrade_flow(self, service, headers):
        """Test five allowed, sixth denied, upgrade, allowed again."""
        async with self._client(service) as client:
            for expected in range(1, 6):
                response = await client.post("/entitlements/consume", json={"action": "aiMessages"}, headers=headers)
                assert response.status_code == 200
                assert response.json()["allowed"] is True
                assert response.json()["used"] == expected

            response = await client.post("/entitlements/consume", json={"action": "aiMessages"}, headers=headers)
            denied = response.json()
            assert denied["allowed"] is False
            assert "5" in denied["reason"]

            response = await client.post("/subscriptions/plan", json={"tier_id": "pro-monthly"}, headers=headers)
            assert response.status_code == 200

            response = await client.post("/entitlements/consume", json={"action": "aiMessages"}, headers=headers)
            allowed = response.json()
            assert allowed["allowed"] is True
            assert allowed["used"] == 1
            assert allowed["limit"] == 500

    @pytest.mark.asyncio
    async def test_users_are_isolated(self, service):
        """Test that one user's consumption never touches another's."""
        async with self._client(service) as client:
            for _ in range(5):
                await client.post("/entitlements/consume", json={"action": "aiMessages"},
                                  headers={"X-User-Id": "user-a"})

            response = await client.post("/entitlements/consume", json={"action": "aiMessages"},
                                         headers={"X-User-Id": "user-b"})

            assert response.json()["allowed"] is True
            assert response.json()["used"] == 1

    @pytest.mark.asyncio
    async def test_concurrent_requests_respect_quota(self, service, headers):
        """Test that parallel consumes cannot exceed the daily limit."""
        async with self._client(service) as client:
            responses = await asyncio.gather(*[
                client.post("/entitlements/consume", json={"action": "detailedNotes"}, headers=headers)
                for _ in range(20)
            ])

            allowed = [response.json()["allowed"] for response in responses]
            assert allowed.count(True) == 2

            usage = await client.get("/entitlements/usage", headers=headers)
            assert usage.json()["usage"]["detailedNotes"] == 2
