"""
HTTP request/response models for the Entitlements Service.
"""

from datetime import datetime
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from .checker.checker import EntitlementDecision
from .plans.models import Tier
from .subscriptions.models import Subscription
from .usage.models import UsageSnapshot


class EntitlementCheckRequest(BaseModel):
    """Request model for entitlement check and consume."""
    action: str = Field(..., description="Action kind, e.g. aiMessages or AI_MESSAGE")


class EntitlementDecisionResponse(BaseModel):
    """Response model for entitlement decisions."""
    allowed: bool = Field(..., description="Whether the action is allowed")
    reason: Optional[str] = Field(None, description="Reason for the decision")
    action: str
    used: int = Field(0, description="Today's count for the action")
    limit: int = Field(0, description="Daily quota, -1 for unlimited")
    remaining: int = Field(0, description="Allowance left today, -1 for unlimited")
    tier_id: Optional[str] = None
    fail_open: bool = Field(False, description="Allowed because the backend was unavailable")

    @classmethod
    def from_decision(cls, decision: EntitlementDecision) -> "EntitlementDecisionResponse":
        return cls(
            allowed=decision.allowed,
            reason=decision.reason,
            action=decision.action.value,
            used=decision.used,
            limit=decision.limit,
            remaining=decision.remaining,
            tier_id=decision.tier_id,
            fail_open=decision.fail_open,
        )


class TierResponse(BaseModel):
    """Response model for a plan tier."""
    id: str
    display_name: str
    quotas: Dict[str, int]
    billing_period: str
    price: float

    @classmethod
    def from_tier(cls, tier: Tier) -> "TierResponse":
        return cls(
            id=tier.id,
            display_name=tier.display_name,
            quotas=tier.limits(),
            billing_period=tier.billing_period.value,
            price=tier.price,
        )


class PlanListResponse(BaseModel):
    """Response model for plan list."""
    plans: List[TierResponse]


class UsageSnapshotResponse(BaseModel):
    """Response model for the usage snapshot."""
    user_id: Optional[str]
    tier: TierResponse
    usage: Dict[str, int]
    limits: Dict[str, int]
    remaining: Dict[str, int]
    day_key: str
    subscription_state: Optional[str] = None
    degraded: bool = False

    @classmethod
    def from_snapshot(cls, snapshot: UsageSnapshot) -> "UsageSnapshotResponse":
        return cls(
            user_id=snapshot.user_id,
            tier=TierResponse.from_tier(snapshot.tier),
            usage=snapshot.usage,
            limits=snapshot.limits,
            remaining=snapshot.remaining(),
            day_key=snapshot.day_key,
            subscription_state=snapshot.subscription_state,
            degraded=snapshot.degraded,
        )


class ChangePlanRequest(BaseModel):
    """Request model for a plan switch."""
    tier_id: str = Field(..., min_length=1, description="Target tier id")


class CancelPlanRequest(BaseModel):
    """Request model for cancellation."""
    at_period_end: bool = Field(False, description="Keep the paid tier until the period-end event")


class PurchaseRequest(BaseModel):
    """Billing outcome forwarded by the purchase collaborator."""
    product_id: str = Field(..., min_length=1)
    success: bool
    transaction_id: Optional[str] = None


class SubscriptionResponse(BaseModel):
    """Response model for subscription operations."""
    user_id: str
    tier_id: str
    is_active: bool
    state: str
    activated_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    @classmethod
    def from_subscription(cls, subscription: Subscription) -> "SubscriptionResponse":
        return cls(
            user_id=subscription.user_id,
            tier_id=subscription.tier_id,
            is_active=subscription.is_active,
            state=subscription.state.value,
            activated_at=subscription.activated_at,
            updated_at=subscription.updated_at,
            cancelled_at=subscription.cancelled_at,
        )


class PurchaseResponse(BaseModel):
    """Response model for a purchase trigger."""
    applied: bool
    subscription: Optional[SubscriptionResponse] = None
