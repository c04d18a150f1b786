"""
Entitlement checker.

``can_perform`` is a read-only peek. ``perform_and_consume`` is the gate: the
quota comparison and the increment are one atomic ledger operation, so N
concurrent callers against quota Q see exactly ``min(N, Q)`` allows.
"""

from contextlib import nullcontext
from dataclasses import dataclass
from typing import Any, Dict, Optional

from shared.errors import PermissionDeniedError, StoreUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..plans.catalog import PlanCatalog
from ..plans.models import UNLIMITED, ActionKind, Tier
from ..policy import on_unauthorized_default
from ..store.base import DocumentStore, subscription_ref
from ..subscriptions.models import Subscription
from ..usage.ledger import UsageLedger

UNAUTHENTICATED = "unauthenticated"
FAIL_OPEN = "fail-open: usage backend unavailable"


@dataclass(frozen=True)
class EntitlementDecision:
    """Allow/deny answer with the numbers behind it."""
    allowed: bool
    action: ActionKind
    reason: Optional[str] = None
    used: int = 0
    limit: int = 0
    tier_id: Optional[str] = None
    fail_open: bool = False

    @property
    def remaining(self) -> int:
        if self.limit == UNLIMITED:
            return UNLIMITED
        return max(self.limit - self.used, 0)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "allowed": self.allowed,
            "reason": self.reason,
            "action": self.action.value,
            "used": self.used,
            "limit": self.limit,
            "remaining": self.remaining,
            "tierId": self.tier_id,
            "failOpen": self.fail_open,
        }


def limit_reason(action: ActionKind, used: int, limit: int) -> str:
    return f"Daily {action.value} limit reached ({used}/{limit}). Upgrade your plan for more usage."


class EntitlementChecker:
    """Combines tier quotas with the usage ledger."""

    def __init__(self,
                 catalog: PlanCatalog,
                 ledger: UsageLedger,
                 store: DocumentStore,
                 metrics: Optional[MetricsCollector] = None):
        self.catalog = catalog
        self.ledger = ledger
        self.store = store
        self.metrics = metrics
        self.logger = get_logger("checker.entitlements")

    async def resolve_tier(self, user_id: str) -> Tier:
        """Tier currently applying to ``user_id`` (free when no subscription exists)."""
        data = await self.store.get_document(subscription_ref(user_id))
        subscription = Subscription.from_document(user_id, data, free_tier_id=self.catalog.free_tier_id)
        if subscription is None:
            return await self.catalog.get_tier(self.catalog.free_tier_id)
        return await self.catalog.get_tier(subscription.entitled_tier_id(self.catalog.free_tier_id))

    async def can_perform(self, user_id: Optional[str], action: ActionKind) -> EntitlementDecision:
        """Peek: would ``action`` be allowed right now? Never writes."""
        action = ActionKind.parse(action)
        with self._timed("peek"):
            if not user_id:
                decision = self._from_default(action, reason=UNAUTHENTICATED)
            else:
                try:
                    tier = await self.resolve_tier(user_id)
                    record = await self.ledger.get_today(user_id)
                    decision = self._evaluate(action, tier, record.count_for(action))
                except PermissionDeniedError as e:
                    decision = self._from_default(action, user_id=user_id, error=e)
                except StoreUnavailableError as e:
                    decision = self._fail_open(user_id, action, e, "peek")

        self._record(decision, "peek")
        return decision

    async def perform_and_consume(self, user_id: Optional[str], action: ActionKind) -> EntitlementDecision:
        """Atomically check the quota and consume one unit on allow.

        Raises ``ValidationError`` for a user id that cannot address a
        document.
        """
        action = ActionKind.parse(action)
        with self._timed("consume"):
            if not user_id:
                decision = EntitlementDecision(allowed=False, action=action, reason=UNAUTHENTICATED)
            else:
                try:
                    # Quota staleness is acceptable; the count is not
                    tier = await self.resolve_tier(user_id)
                    limit = tier.quota_for(action)
                    outcome = await self.ledger.try_increment(user_id, action, limit)
                except (StoreUnavailableError, PermissionDeniedError) as e:
                    decision = self._fail_open(user_id, action, e, "consume")
                else:
                    decision = EntitlementDecision(
                        allowed=outcome.allowed,
                        action=action,
                        reason=None if outcome.allowed else limit_reason(action, outcome.count, limit),
                        used=outcome.count,
                        limit=limit,
                        tier_id=tier.id,
                    )

        self._record(decision, "consume")
        if not decision.allowed:
            self.logger.info("Action denied", user_id=user_id, action=action.value, reason=decision.reason)
        return decision

    def _evaluate(self, action: ActionKind, tier: Tier, used: int,
                  reason: Optional[str] = None) -> EntitlementDecision:
        limit = tier.quota_for(action)
        allowed = limit == UNLIMITED or used < limit
        return EntitlementDecision(
            allowed=allowed,
            action=action,
            reason=reason if allowed else limit_reason(action, used, limit),
            used=used,
            limit=limit,
            tier_id=tier.id,
        )

    def _from_default(self, action: ActionKind, user_id: Optional[str] = None,
                      error: Optional[BaseException] = None, reason: Optional[str] = None) -> EntitlementDecision:
        view = on_unauthorized_default(self.catalog.free_tier, self.ledger.today(), user_id, error, context="peek")
        return self._evaluate(action, view.tier, view.usage[action.value], reason=reason)

    def _fail_open(self, user_id: str, action: ActionKind, error: BaseException, mode: str) -> EntitlementDecision:
        self.logger.warning(
            "Entitlement backend unavailable, failing open",
            user_id=user_id,
            action=action.value,
            mode=mode,
            error_type=type(error).__name__,
            error=str(error)
        )
        if self.metrics is not None:
            self.metrics.increment_counter("fail_open_total", action=action.value)
        return EntitlementDecision(allowed=True, action=action, reason=FAIL_OPEN, fail_open=True)

    def _record(self, decision: EntitlementDecision, mode: str) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter(
                "entitlement_checks_total",
                action=decision.action.value,
                decision="allow" if decision.allowed else "deny",
                mode=mode
            )

    def _timed(self, mode: str):
        if self.metrics is None:
            return nullcontext()
        return self.metrics.time_operation("entitlement_check_duration_seconds", mode=mode)

