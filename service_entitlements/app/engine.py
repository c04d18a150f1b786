"""
Entitlement Engine.

One engine instance owns the plan cache, the ledger, the checker, tier
assignment and the change notifier. It is constructed once and injected
wherever entitlements are needed; the exposed operations act on the current
user reported by the identity provider.
"""

import asyncio
import inspect
from typing import List, Optional

from shared.config import BaseConfig
from shared.errors import UnauthenticatedError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig

from .checker.checker import EntitlementChecker, EntitlementDecision
from .clock import Clock, day_key, utc_now
from .identity import IdentityProvider
from .plans.catalog import PlanCatalog
from .plans.models import ActionKind, Tier
from .plans.source import PlanConfigSource, StorePlanSource
from .policy import on_unauthorized_default
from .store import create_store
from .store.base import DocumentStore, Unsubscribe
from .subscriptions.assignment import TierAssignment
from .subscriptions.models import PurchaseResult, Subscription
from .subscriptions.notifier import ChangeNotifier, SnapshotListener
from .usage.ledger import UsageLedger
from .usage.models import UsageSnapshot


class EntitlementEngine:
    """Facade over the entitlement components for the current user."""

    def __init__(self,
                 store: DocumentStore,
                 identity: IdentityProvider,
                 config: Optional[BaseConfig] = None,
                 clock: Clock = utc_now,
                 plan_source: Optional[PlanConfigSource] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.config = config or BaseConfig()
        self.store = store
        self.identity = identity
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("engine.entitlements")

        retry_config = RetryConfig(
            max_attempts=self.config.transaction_max_attempts,
            base_delay=self.config.transaction_base_delay,
            max_delay=self.config.transaction_max_delay,
        )

        self.catalog = PlanCatalog(
            plan_source or StorePlanSource(store),
            clock=clock,
            ttl_seconds=self.config.catalog_ttl_seconds,
            fetch_timeout=self.config.catalog_fetch_timeout_seconds,
            free_tier_id=self.config.free_tier_id,
            metrics=metrics,
        )
        self.ledger = UsageLedger(store, clock=clock, metrics=metrics)
        self.checker = EntitlementChecker(self.catalog, self.ledger, store, metrics=metrics)
        self.assignment = TierAssignment(
            store, self.catalog, self.ledger, clock=clock, retry_config=retry_config, metrics=metrics
        )
        self.notifier = ChangeNotifier(
            store,
            self.catalog,
            clock=clock,
            queue_size=self.config.notifier_queue_size,
            reattach_base_delay=self.config.notifier_reattach_base_delay,
            reattach_max_delay=self.config.notifier_reattach_max_delay,
            metrics=metrics,
        )

    @classmethod
    def from_config(cls,
                    config: BaseConfig,
                    identity: IdentityProvider,
                    clock: Clock = utc_now,
                    metrics: Optional[MetricsCollector] = None) -> "EntitlementEngine":
        return cls(create_store(config), identity, config=config, clock=clock, metrics=metrics)

    async def start(self):
        await self.store.start()
        await self.catalog.start()
        await self.notifier.start()
        self.logger.info("Entitlement engine started", store=type(self.store).__name__)

    async def stop(self):
        await self.notifier.stop()
        await self.catalog.stop()
        await self.store.close()
        self.logger.info("Entitlement engine stopped")

    def current_user_id(self) -> Optional[str]:
        return self.identity.get_current_user_id()

    def _require_user(self) -> str:
        user_id = self.current_user_id()
        if not user_id:
            raise UnauthenticatedError()
        return user_id

    async def can_perform(self, action: ActionKind) -> EntitlementDecision:
        return await self.checker.can_perform(self.current_user_id(), action)

    async def perform_and_consume(self, action: ActionKind) -> EntitlementDecision:
        return await self.checker.perform_and_consume(self.current_user_id(), action)

    async def get_usage_snapshot(self) -> UsageSnapshot:
        return await self.notifier.current_snapshot(self.current_user_id())

    async def change_plan(self, tier_id: str) -> Subscription:
        return await self.assignment.change_plan(self._require_user(), tier_id)

    async def cancel_plan(self, at_period_end: bool = False) -> Subscription:
        return await self.assignment.cancel_plan(self._require_user(), at_period_end=at_period_end)

    async def handle_purchase(self, purchase: PurchaseResult) -> Optional[Subscription]:
        return await self.assignment.handle_purchase(self._require_user(), purchase)

    async def restore_purchases(self) -> bool:
        return await self.assignment.restore(self._require_user())

    async def ensure_subscription(self) -> Subscription:
        return await self.assignment.ensure_subscription(self._require_user())

    async def list_plans(self) -> List[Tier]:
        return await self.catalog.list_tiers()

    def subscribe(self, callback: SnapshotListener) -> Unsubscribe:
        """Stream snapshots for the current user.

        Without a signed-in user the callback receives the default view once.
        """
        user_id = self.current_user_id()
        if user_id:
            return self.notifier.subscribe(user_id, callback)

        default = on_unauthorized_default(self.catalog.free_tier, day_key(self.clock()))

        async def deliver_default() -> None:
            result = callback(default)
            if inspect.isawaitable(result):
                await result

        task = asyncio.get_running_loop().create_task(deliver_default())
        return task.cancel

    async def health_check(self) -> bool:
        return await self.store.health_check()
