"""
Tier assignment.

Every tier mutation that changes which quotas apply is one transaction that
writes the subscription and deletes today's usage record together, so the
two can never diverge.
"""

from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from shared.errors import TransactionConflictError, ValidationError
from shared.logging import get_logger
from shared.metrics import MetricsCollector
from shared.retry import RetryConfig, run_with_retry

from ..clock import Clock, utc_now
from ..plans.catalog import PlanCatalog
from ..store.base import DocumentStore, Transaction, subscription_ref
from ..usage.ledger import UsageLedger
from .models import PurchaseResult, Subscription, SubscriptionState

T = TypeVar("T")


class TierAssignment:
    """Mutates a user's subscription tier and resets the ledger accordingly."""

    def __init__(self,
                 store: DocumentStore,
                 catalog: PlanCatalog,
                 ledger: UsageLedger,
                 clock: Clock = utc_now,
                 retry_config: Optional[RetryConfig] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.catalog = catalog
        self.ledger = ledger
        self.clock = clock
        self.retry_config = retry_config or RetryConfig()
        self.metrics = metrics
        self.logger = get_logger("subscriptions.assignment")

    async def get_subscription(self, user_id: str) -> Optional[Subscription]:
        return self._load(user_id, await self.store.get_document(subscription_ref(user_id)))

    async def ensure_subscription(self, user_id: str) -> Subscription:
        """Create the free-tier record at signup; existing records are returned untouched."""
        async def attempt(txn: Transaction) -> Subscription:
            ref = subscription_ref(user_id)
            existing = self._load(user_id, await txn.get(ref))
            if existing is not None:
                return existing
            now = self.clock()
            created = Subscription(
                user_id=user_id,
                tier_id=self.catalog.free_tier_id,
                is_active=True,
                activated_at=now,
                updated_at=now,
                free_tier_id=self.catalog.free_tier_id,
            )
            txn.set(ref, created.to_document())
            return created

        return await self._transact(attempt, "ensure_subscription")

    async def change_plan(self, user_id: str, new_tier_id: str, product_id: Optional[str] = None) -> Subscription:
        """Switch ``user_id`` to ``new_tier_id`` and reset today's usage.

        Unknown tier ids resolve to the free tier.
        """
        self._require_user(user_id)
        tier = await self.catalog.get_tier(new_tier_id)
        if tier.id != new_tier_id:
            self.logger.warning("Requested tier not in catalog, assigning fallback",
                                user_id=user_id, requested=new_tier_id, assigned=tier.id)

        async def attempt(txn: Transaction) -> Subscription:
            ref = subscription_ref(user_id)
            current = self._load(user_id, await txn.get(ref))
            now = self.clock()
            updated = Subscription(
                user_id=user_id,
                tier_id=tier.id,
                is_active=True,
                activated_at=now,
                updated_at=now,
                cancelled_at=None,
                deleted_at=current.deleted_at if current else None,
                product_id=product_id,
                free_tier_id=self.catalog.free_tier_id,
            )
            txn.set(ref, updated.to_document())
            self.ledger.reset_today(txn, user_id)
            return updated

        subscription = await self._transact(attempt, "change_plan")
        self._record_change("change")
        self.logger.info("Plan changed", user_id=user_id, tier_id=subscription.tier_id)
        return subscription

    async def cancel_plan(self, user_id: str, at_period_end: bool = False) -> Subscription:
        """Cancel the paid plan.

        Immediate cancellation demotes to the free tier, deactivates and resets
        today's usage. With ``at_period_end`` the user keeps the paid tier
        (state CANCELLED) until :meth:`expire_plan` runs.
        """
        self._require_user(user_id)

        async def attempt(txn: Transaction) -> Subscription:
            ref = subscription_ref(user_id)
            current = self._load(user_id, await txn.get(ref)) or self._blank(user_id)
            now = self.clock()
            current.updated_at = now
            current.cancelled_at = now
            if not at_period_end:
                current.tier_id = self.catalog.free_tier_id
                current.is_active = False
                self.ledger.reset_today(txn, user_id)
            txn.set(ref, current.to_document())
            return current

        subscription = await self._transact(attempt, "cancel_plan")
        self._record_change("cancel_at_period_end" if at_period_end else "cancel")
        self.logger.info("Plan cancelled", user_id=user_id, at_period_end=at_period_end,
                         state=subscription.state.value)
        return subscription

    async def expire_plan(self, user_id: str) -> Subscription:
        """Period-end event: a cancelled or lapsed paid plan drops to free."""
        self._require_user(user_id)

        async def attempt(txn: Transaction) -> Subscription:
            ref = subscription_ref(user_id)
            current = self._load(user_id, await txn.get(ref)) or self._blank(user_id)
            if current.tier_id == self.catalog.free_tier_id:
                return current
            current.tier_id = self.catalog.free_tier_id
            current.is_active = False
            current.updated_at = self.clock()
            txn.set(ref, current.to_document())
            self.ledger.reset_today(txn, user_id)
            return current

        subscription = await self._transact(attempt, "expire_plan")
        self._record_change("expire")
        self.logger.info("Plan expired", user_id=user_id)
        return subscription

    async def delete_account(self, user_id: str) -> Subscription:
        """Soft-delete the subscription; quotas fall back to the free tier."""
        self._require_user(user_id)

        async def attempt(txn: Transaction) -> Subscription:
            ref = subscription_ref(user_id)
            current = self._load(user_id, await txn.get(ref)) or self._blank(user_id)
            now = self.clock()
            current.deleted_at = now
            current.is_active = False
            current.updated_at = now
            txn.set(ref, current.to_document())
            return current

        subscription = await self._transact(attempt, "delete_account")
        self._record_change("delete")
        self.logger.info("Subscription soft-deleted", user_id=user_id)
        return subscription

    async def handle_purchase(self, user_id: str, purchase: PurchaseResult) -> Optional[Subscription]:
        """Apply a billing outcome; failed purchases change nothing."""
        if not purchase.success:
            self.logger.info("Purchase not completed, plan unchanged",
                             user_id=user_id, product_id=purchase.product_id)
            return None
        return await self.change_plan(user_id, purchase.product_id, product_id=purchase.product_id)

    async def restore(self, user_id: str) -> bool:
        """Whether the stored subscription still grants a paid tier."""
        self._require_user(user_id)
        subscription = await self.get_subscription(user_id)
        restored = subscription is not None and subscription.state in (
            SubscriptionState.ACTIVE_PAID, SubscriptionState.CANCELLED
        )
        self.logger.info("Purchases restored", user_id=user_id, restored=restored)
        return restored

    def _load(self, user_id: str, data: Optional[Dict[str, Any]]) -> Optional[Subscription]:
        return Subscription.from_document(user_id, data, free_tier_id=self.catalog.free_tier_id)

    def _blank(self, user_id: str) -> Subscription:
        free = self.catalog.free_tier_id
        return Subscription(user_id=user_id, tier_id=free, free_tier_id=free)

    async def _transact(self, attempt: Callable[[Transaction], Awaitable[T]], operation: str) -> T:
        def on_retry(attempt_number: int, error: BaseException) -> None:
            if self.metrics is not None:
                self.metrics.increment_counter("transaction_retries_total", operation=operation)

        return await run_with_retry(
            lambda: self.store.run_transaction(attempt),
            exceptions=(TransactionConflictError,),
            config=self.retry_config,
            operation=operation,
            on_retry=on_retry,
        )

    def _record_change(self, kind: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("plan_changes_total", kind=kind)

    @staticmethod
    def _require_user(user_id: str) -> None:
        if not user_id:
            raise ValidationError("user_id is required")
