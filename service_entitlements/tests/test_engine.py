"""
Unit tests for the entitlement engine facade.
"""

import asyncio
from datetime import datetime, timezone

import pytest

from shared.config import BaseConfig
from shared.errors import UnauthenticatedError
from shared.metrics import MetricsCollector
from service_entitlements.app.clock import ManualClock
from service_entitlements.app.engine import EntitlementEngine
from service_entitlements.app.identity import StaticIdentity
from service_entitlements.app.plans.models import ActionKind
from service_entitlements.app.store.memory import InMemoryDocumentStore
from service_entitlements.app.subscriptions.models import PurchaseResult


async def settle(rounds: int = 20):
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestEntitlementEngine:
    """Test cases for EntitlementEngine."""

    @pytest.fixture
    def clock(self):
        return ManualClock(datetime(2024, 3, 1, 23, 59, 0, tzinfo=timezone.utc))

    @pytest.fixture
    def identity(self):
        return StaticIdentity("user-1")

    @pytest.fixture
    def engine(self, identity, clock):
        """Create EntitlementEngine instance."""
        return EntitlementEngine(
            InMemoryDocumentStore(),
            identity,
            config=BaseConfig(transaction_base_delay=0.0),
            clock=clock,
            metrics=MetricsCollector("entitlements-test"),
        )

    @pytest.mark.asyncio
    async def test_quota_resets_at_utc_midnight(self, engine, clock):
        """Test that the free quota comes back on the next UTC day."""
        await engine.start()
        try:
            for _ in range(5):
                assert (await engine.perform_and_consume(ActionKind.AI_MESSAGE)).allowed

            denied = await engine.perform_and_consume(ActionKind.AI_MESSAGE)
            assert denied.allowed is False

            clock.advance(minutes=2)
            decision = await engine.perform_and_consume(ActionKind.AI_MESSAGE)

            assert decision.allowed is True
            assert decision.used == 1
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_upgrade_lifts_the_limit(self, engine):
        """Test consume, deny, upgrade, consume."""
        await engine.start()
        try:
            for _ in range(6):
                await engine.perform_and_consume(ActionKind.PDF_EXPORT)
            assert not (await engine.can_perform(ActionKind.PDF_EXPORT)).allowed

            await engine.change_plan("pro-monthly")
            decision = await engine.perform_and_consume(ActionKind.PDF_EXPORT)

            assert decision.allowed is True
            assert decision.used == 1
            assert decision.limit == 20
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_pushed_plan_update_applies_without_restart(self, engine):
        """Test push invalidation of a tier quota."""
        await engine.start()
        try:
            await engine.can_perform(ActionKind.AI_MESSAGE)
            await engine.catalog.source.publish_tier("free", {"quotas": {"aiMessages": 2}})
            await settle()

            results = [(await engine.perform_and_consume(ActionKind.AI_MESSAGE)).allowed for _ in range(3)]

            assert results == [True, True, False]
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_mutations_require_a_signed_in_user(self, engine, identity):
        """Test that plan operations are rejected when signed out."""
        identity.sign_out()

        with pytest.raises(UnauthenticatedError):
            await engine.change_plan("pro-monthly")
        with pytest.raises(UnauthenticatedError):
            await engine.cancel_plan()
        with pytest.raises(UnauthenticatedError):
            await engine.handle_purchase(PurchaseResult(product_id="pro-monthly", success=True))

    @pytest.mark.asyncio
    async def test_signed_out_snapshot_is_default_view(self, engine, identity):
        """Test the snapshot read when signed out."""
        identity.sign_out()

        snapshot = await engine.get_usage_snapshot()

        assert snapshot.degraded is True
        assert snapshot.tier.id == "free"

    @pytest.mark.asyncio
    async def test_signed_out_subscribe_delivers_default_view_once(self, engine, identity):
        """Test subscribe with nobody signed in."""
        identity.sign_out()
        received = []

        engine.subscribe(received.append)
        await settle()

        assert len(received) == 1
        assert received[0].degraded is True
        assert engine.notifier.subscriber_count() == 0

    @pytest.mark.asyncio
    async def test_subscribe_follows_consumes(self, engine):
        """Test the live snapshot stream."""
        await engine.start()
        try:
            received = []
            unsubscribe = engine.subscribe(received.append)
            await engine.perform_and_consume(ActionKind.DETAILED_NOTE)
            await settle()

            assert received[-1].usage["detailedNotes"] == 1
            unsubscribe()
            assert engine.notifier.subscriber_count() == 0
        finally:
            await engine.stop()

    @pytest.mark.asyncio
    async def test_purchase_and_restore(self, engine):
        """Test the billing trigger."""
        assert await engine.restore_purchases() is False

        subscription = await engine.handle_purchase(PurchaseResult(product_id="premium-yearly", success=True))

        assert subscription.tier_id == "premium-yearly"
        assert await engine.restore_purchases() is True

    @pytest.mark.asyncio
    async def test_list_plans_includes_baked_in_tiers(self, engine):
        """Test the plan listing."""
        tiers = await engine.list_plans()

        assert [tier.id for tier in tiers][:5] == [
            "free", "pro-monthly", "pro-yearly", "premium-monthly", "premium-yearly"
        ]

    @pytest.mark.asyncio
    async def test_ensure_subscription(self, engine):
        """Test the signup bootstrap through the facade."""
        subscription = await engine.ensure_subscription()

        assert subscription.user_id == "user-1"
        assert subscription.tier_id == "free"
        assert await engine.health_check() is True
