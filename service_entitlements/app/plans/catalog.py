"""
Plan catalog for the Entitlement Engine.

Tier definitions are cached in memory with a TTL and kept current by push
invalidation from the plan-config source. Reads never fail: a failed fetch
serves the stale entry, then the baked-in definition, then the free tier.
"""

import asyncio
from typing import Dict, List, Mapping, Optional

from shared.errors import CatalogUnavailableError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..clock import Clock, utc_now
from .models import DEFAULT_TIERS, FREE_TIER_ID, CacheEntry, Tier, TierChange, tier_from_document
from .source import PlanConfigSource

# Fallback entries are retried sooner than healthy ones
FALLBACK_TTL_SECONDS = 30.0


class PlanCatalog:
    """TTL + push-invalidated tier cache."""

    def __init__(self,
                 source: PlanConfigSource,
                 clock: Clock = utc_now,
                 ttl_seconds: float = 300.0,
                 fetch_timeout: float = 2.0,
                 free_tier_id: str = FREE_TIER_ID,
                 defaults: Mapping[str, Tier] = DEFAULT_TIERS,
                 metrics: Optional[MetricsCollector] = None):
        if free_tier_id not in defaults:
            raise ValidationError(f"baked-in catalog has no '{free_tier_id}' tier")
        self.source = source
        self.clock = clock
        self.ttl_seconds = ttl_seconds
        self.fetch_timeout = fetch_timeout
        self.free_tier_id = free_tier_id
        self.defaults = defaults
        self.metrics = metrics
        self.logger = get_logger("catalog.plans")

        self._cache: Dict[str, CacheEntry[Tier]] = {}
        self._refreshing: Dict[str, asyncio.Task] = {}
        # Bumped by pushes/invalidations so an in-flight refresh cannot clobber them
        self._generations: Dict[str, int] = {}
        self._unsubscribe = None

    @property
    def free_tier(self) -> Tier:
        entry = self._cache.get(self.free_tier_id)
        return entry.value if entry else self.defaults[self.free_tier_id]

    async def start(self):
        """Attach the push-invalidation listener."""
        if self._unsubscribe is None:
            self._unsubscribe = self.source.on_tier_changed(self._apply_changes, self._on_listener_error)
            self.logger.info("Plan catalog started", ttl_seconds=self.ttl_seconds)

    async def stop(self):
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        for task in list(self._refreshing.values()):
            task.cancel()
        self._refreshing.clear()
        self.logger.info("Plan catalog stopped")

    async def get_tier(self, tier_id: Optional[str]) -> Tier:
        """Resolve ``tier_id`` to a Tier; unknown ids resolve to the free tier."""
        tier_id = (tier_id or "").strip() or self.free_tier_id
        entry = self._cache.get(tier_id)
        if entry is not None and entry.is_fresh(self.clock()):
            return entry.value

        task = self._refreshing.get(tier_id)
        if task is None:
            task = asyncio.create_task(self._refresh(tier_id))
            self._refreshing[tier_id] = task
            task.add_done_callback(lambda done, key=tier_id: self._refresh_done(key, done))

        if entry is not None:
            # Stale-while-revalidate
            return entry.value
        return await asyncio.shield(task)

    def invalidate(self, tier_id: Optional[str] = None) -> None:
        """Drop one cached tier, or all of them."""
        keys = [tier_id] if tier_id else list(self._cache)
        for key in keys:
            self._cache.pop(key, None)
            self._bump(key)
        self.logger.info("Plan catalog invalidated", tier_id=tier_id or "*")

    async def list_tiers(self) -> List[Tier]:
        """Every known tier, baked-in ones first."""
        ids = list(self.defaults)
        ids.extend(
            key for key, entry in self._cache.items()
            if key not in self.defaults and entry.value.id == key
        )
        return [await self.get_tier(tier_id) for tier_id in ids]

    async def _refresh(self, tier_id: str) -> Tier:
        generation = self._generations.get(tier_id, 0)
        base = self.defaults.get(tier_id)
        try:
            try:
                data = await asyncio.wait_for(self.source.read_tier(tier_id), timeout=self.fetch_timeout)
            except asyncio.TimeoutError as e:
                raise CatalogUnavailableError("Plan config fetch timed out", details={"tier_id": tier_id}) from e
            except Exception as e:
                raise CatalogUnavailableError(str(e) or type(e).__name__, details={"tier_id": tier_id}) from e

            if data is None and base is None:
                tier, source = self.free_tier, "unknown"
                self._record_fallback("unknown_tier")
                self.logger.warning("Unknown tier, using free tier", tier_id=tier_id)
            elif data is None:
                tier, source = base, "default"
            else:
                tier, source = tier_from_document(tier_id, data, base), "store"
            ttl = self.ttl_seconds

        except (CatalogUnavailableError, ValidationError, ValueError, TypeError) as e:
            tier, source = self._fallback(tier_id, base, e)
            ttl = min(self.ttl_seconds, FALLBACK_TTL_SECONDS)

        if self._generations.get(tier_id, 0) == generation:
            self._cache[tier_id] = CacheEntry(value=tier, fetched_at=self.clock(), ttl=ttl, source=source)
        else:
            pushed = self._cache.get(tier_id)
            if pushed is not None:
                tier = pushed.value
        return tier

    def _fallback(self, tier_id: str, base: Optional[Tier], error: Exception):
        stale = self._cache.get(tier_id)
        if stale is not None:
            reason, tier = "stale", stale.value
        elif base is not None:
            reason, tier = "default", base
        else:
            reason, tier = "free", self.free_tier

        self._record_fallback(reason)
        self.logger.warning(
            "Plan catalog fetch failed, serving fallback",
            tier_id=tier_id,
            fallback=reason,
            error=str(error)
        )
        return tier, f"fallback:{reason}"

    def _refresh_done(self, tier_id: str, task: asyncio.Task) -> None:
        if self._refreshing.get(tier_id) is task:
            del self._refreshing[tier_id]
        if not task.cancelled() and task.exception() is not None:
            self.logger.error("Plan refresh crashed", tier_id=tier_id, error=str(task.exception()))

    def _apply_changes(self, changes: List[TierChange]) -> None:
        now = self.clock()
        for change in changes:
            base = self.defaults.get(change.tier_id)
            self._bump(change.tier_id)
            if change.change_type == "removed":
                if base is not None:
                    self._cache[change.tier_id] = CacheEntry(base, now, self.ttl_seconds, source="default")
                else:
                    self._cache.pop(change.tier_id, None)
                self.logger.info("Plan removed, reverted to baked-in", tier_id=change.tier_id)
                continue

            try:
                tier = tier_from_document(change.tier_id, change.data, base)
            except (ValidationError, ValueError, TypeError) as e:
                self.logger.warning("Ignoring malformed plan document", tier_id=change.tier_id, error=str(e))
                continue
            self._cache[change.tier_id] = CacheEntry(tier, now, self.ttl_seconds, source="push")
            self.logger.info("Plan updated", tier_id=change.tier_id, change=change.change_type,
                             revision=tier.revision)

    def _on_listener_error(self, error: Exception) -> None:
        # TTL expiry keeps the cache converging without the push channel
        self._unsubscribe = None
        self._record_fallback("listener_error")
        self.logger.warning("Plan change listener failed", error=str(error))

    def _bump(self, tier_id: str) -> None:
        self._generations[tier_id] = self._generations.get(tier_id, 0) + 1

    def _record_fallback(self, reason: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("catalog_fallbacks_total", reason=reason)
