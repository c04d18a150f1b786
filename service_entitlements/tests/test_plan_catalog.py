"""
Unit tests for the plan catalog.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock, patch

import pytest

from shared.errors import StoreUnavailableError, ValidationError
from shared.metrics import MetricsCollector
from service_entitlements.app.clock import ManualClock
from service_entitlements.app.plans.catalog import PlanCatalog
from service_entitlements.app.plans.models import DEFAULT_TIERS, UNLIMITED, ActionKind, tier_from_document
from service_entitlements.app.plans.source import StorePlanSource
from service_entitlements.app.store.memory import InMemoryDocumentStore


async def settle(rounds: int = 10):
    for _ in range(rounds):
        await asyncio.sleep(0)


class TestPlanCatalog:
    """Test cases for PlanCatalog."""

    @pytest.fixture
    def clock(self):
        return ManualClock(datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc))

    @pytest.fixture
    def source(self):
        return StorePlanSource(InMemoryDocumentStore())

    @pytest.fixture
    def metrics(self):
        return MetricsCollector("entitlements-test")

    @pytest.fixture
    def catalog(self, source, clock, metrics):
        """Create PlanCatalog instance."""
        return PlanCatalog(source, clock=clock, ttl_seconds=300, fetch_timeout=0.2, metrics=metrics)

    @pytest.mark.asyncio
    async def test_baked_in_tier_when_store_has_no_document(self, catalog):
        """Test the default catalog."""
        tier = await catalog.get_tier("free")

        assert tier.quota_for(ActionKind.AI_MESSAGE) == 5
        assert tier.quota_for(ActionKind.PDF_EXPORT) == 1

    @pytest.mark.asyncio
    async def test_fresh_entry_is_served_from_cache(self, catalog, source):
        """Test that a warm cache does not hit the source."""
        with patch.object(source, "read_tier", new_callable=AsyncMock) as mock_read:
            mock_read.return_value = None
            await catalog.get_tier("pro-monthly")
            await catalog.get_tier("pro-monthly")

        mock_read.assert_awaited_once_with("pro-monthly")

    @pytest.mark.asyncio
    async def test_remote_document_is_merged_over_baked_in(self, catalog, source):
        """Test field-by-field merge of remote plan documents."""
        await source.publish_tier("free", {"quotas": {"aiMessages": 8}, "revision": 3})

        tier = await catalog.get_tier("free")

        assert tier.quota_for(ActionKind.AI_MESSAGE) == 8
        assert tier.quota_for(ActionKind.SUMMARY_NOTE) == 3
        assert tier.revision == 3

    @pytest.mark.asyncio
    async def test_store_error_falls_back_to_baked_in_default(self, catalog, source, metrics):
        """Test that a failing store never makes get_tier throw."""
        with patch.object(source, "read_tier", new_callable=AsyncMock) as mock_read:
            mock_read.side_effect = StoreUnavailableError("backend down")
            tier = await catalog.get_tier("premium-monthly")

        assert tier == DEFAULT_TIERS["premium-monthly"]
        assert tier.quota_for(ActionKind.PDF_EXPORT) == UNLIMITED
        assert metrics.sample("catalog_fallbacks_total", reason="default") == 1.0

    @pytest.mark.asyncio
    async def test_unexpected_source_error_is_contained(self, catalog, source):
        """Test that arbitrary source failures still degrade."""
        with patch.object(source, "read_tier", new_callable=AsyncMock) as mock_read:
            mock_read.side_effect = RuntimeError("unexpected")
            tier = await catalog.get_tier("pro-yearly")

        assert tier.id == "pro-yearly"

    @pytest.mark.asyncio
    async def test_fetch_timeout_falls_back(self, catalog, source):
        """Test the independent fetch timeout."""
        async def slow_read(tier_id):
            await asyncio.sleep(5)

        with patch.object(source, "read_tier", side_effect=slow_read):
            tier = await catalog.get_tier("pro-monthly")

        assert tier == DEFAULT_TIERS["pro-monthly"]

    @pytest.mark.asyncio
    async def test_unknown_tier_with_no_cache_resolves_to_free(self, catalog):
        """Test unresolvable tier ids."""
        tier = await catalog.get_tier("enterprise-lifetime")

        assert tier.id == "free"

    @pytest.mark.asyncio
    async def test_stale_entry_served_while_refresh_fails(self, catalog, source, clock, metrics):
        """Test stale-while-revalidate and stale fallback."""
        await source.publish_tier("pro-monthly", {"quotas": {"aiMessages": 450}})
        assert (await catalog.get_tier("pro-monthly")).quota_for(ActionKind.AI_MESSAGE) == 450

        clock.advance(seconds=301)
        with patch.object(source, "read_tier", new_callable=AsyncMock) as mock_read:
            mock_read.side_effect = StoreUnavailableError("backend down")
            stale = await catalog.get_tier("pro-monthly")
            await settle()

        assert stale.quota_for(ActionKind.AI_MESSAGE) == 450
        assert metrics.sample("catalog_fallbacks_total", reason="stale") == 1.0
        assert (await catalog.get_tier("pro-monthly")).quota_for(ActionKind.AI_MESSAGE) == 450

    @pytest.mark.asyncio
    async def test_refresh_is_single_writer_per_key(self, catalog, source):
        """Test that concurrent cold reads share one fetch."""
        calls = []

        async def slow_read(tier_id):
            calls.append(tier_id)
            await asyncio.sleep(0.01)
            return {"quotas": {"aiMessages": 42}}

        with patch.object(source, "read_tier", side_effect=slow_read):
            tiers = await asyncio.gather(*[catalog.get_tier("pro-monthly") for _ in range(20)])

        assert calls == ["pro-monthly"]
        assert {tier.quota_for(ActionKind.AI_MESSAGE) for tier in tiers} == {42}

    @pytest.mark.asyncio
    async def test_push_updates_cache_before_ttl(self, catalog, source):
        """Test push invalidation of added/modified plans."""
        await catalog.start()
        assert (await catalog.get_tier("pro-monthly")).quota_for(ActionKind.AI_MESSAGE) == 500

        await source.publish_tier("pro-monthly", {"quotas": {"aiMessages": 600}})
        await settle()

        with patch.object(source, "read_tier", new_callable=AsyncMock) as mock_read:
            tier = await catalog.get_tier("pro-monthly")
        mock_read.assert_not_awaited()
        assert tier.quota_for(ActionKind.AI_MESSAGE) == 600
        await catalog.stop()

    @pytest.mark.asyncio
    async def test_removed_plan_reverts_to_baked_in(self, catalog, source):
        """Test that removed entries never vanish."""
        await source.publish_tier("free", {"quotas": {"aiMessages": 1}})
        await catalog.start()
        await settle()
        assert (await catalog.get_tier("free")).quota_for(ActionKind.AI_MESSAGE) == 1

        await source.remove_tier("free")
        await settle()

        assert (await catalog.get_tier("free")).quota_for(ActionKind.AI_MESSAGE) == 5
        await catalog.stop()

    @pytest.mark.asyncio
    async def test_malformed_push_is_ignored(self, catalog, source):
        """Test that a bad plan document does not replace a good entry."""
        await catalog.start()
        await catalog.get_tier("free")

        await source.publish_tier("free", {"quotas": {"aiMessages": -7}})
        await settle()

        assert (await catalog.get_tier("free")).quota_for(ActionKind.AI_MESSAGE) == 5
        await catalog.stop()

    @pytest.mark.asyncio
    async def test_non_object_plan_document_falls_back(self, catalog, source, metrics):
        """Test that a plan document that is not an object is treated as malformed."""
        with patch.object(source, "read_tier", new_callable=AsyncMock) as mock_read:
            mock_read.return_value = "pro-monthly"
            tier = await catalog.get_tier("pro-monthly")

        assert tier == DEFAULT_TIERS["pro-monthly"]
        assert metrics.sample("catalog_fallbacks_total", reason="default") == 1.0

    @pytest.mark.parametrize("data", ["free", ["aiMessages", 5], 5])
    def test_tier_from_document_rejects_non_objects(self, data):
        """Test document shape validation."""
        with pytest.raises(ValidationError):
            tier_from_document("free", data, DEFAULT_TIERS["free"])

    @pytest.mark.asyncio
    async def test_invalidate_forces_refetch(self, catalog, source):
        """Test explicit invalidation."""
        await catalog.get_tier("free")
        await source.publish_tier("free", {"quotas": {"aiMessages": 9}})

        catalog.invalidate("free")

        assert (await catalog.get_tier("free")).quota_for(ActionKind.AI_MESSAGE) == 9

    @pytest.mark.asyncio
    async def test_list_tiers_includes_every_baked_in_plan(self, catalog):
        """Test plan listing."""
        tiers = await catalog.list_tiers()

        assert [tier.id for tier in tiers] == [
            "free", "pro-monthly", "pro-yearly", "premium-monthly", "premium-yearly"
        ]
