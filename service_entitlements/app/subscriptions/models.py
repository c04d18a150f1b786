"""
Subscription data models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from ..plans.models import FREE_TIER_ID


class SubscriptionState(str, Enum):
    """Lifecycle states of a subscription."""
    FREE = "free"
    ACTIVE_PAID = "active_paid"
    CANCELLED = "cancelled"  # still entitled until the period-end event
    EXPIRED = "expired"


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class Subscription:
    """The live subscription record of one user."""
    user_id: str
    tier_id: str = FREE_TIER_ID
    is_active: bool = True
    activated_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    deleted_at: Optional[datetime] = None
    product_id: Optional[str] = None
    # Not persisted; the catalog decides which tier counts as free
    free_tier_id: str = field(default=FREE_TIER_ID, compare=False, repr=False)

    @property
    def state(self) -> SubscriptionState:
        if self.tier_id == self.free_tier_id:
            return SubscriptionState.FREE
        if self.is_active and self.deleted_at is None:
            return SubscriptionState.CANCELLED if self.cancelled_at else SubscriptionState.ACTIVE_PAID
        return SubscriptionState.EXPIRED

    def entitled_tier_id(self, free_tier_id: Optional[str] = None) -> str:
        """Tier whose quotas apply right now."""
        if self.deleted_at is not None or not self.is_active:
            return free_tier_id or self.free_tier_id
        return self.tier_id

    def to_document(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "tierId": self.tier_id,
            "isActive": self.is_active,
            "activatedAt": _format_time(self.activated_at),
            "updatedAt": _format_time(self.updated_at),
            "cancelledAt": _format_time(self.cancelled_at),
            "deletedAt": _format_time(self.deleted_at),
            "productId": self.product_id,
        }

    @classmethod
    def from_document(cls, user_id: str, data: Optional[Dict[str, Any]],
                      free_tier_id: str = FREE_TIER_ID) -> Optional["Subscription"]:
        if not data:
            return None
        return cls(
            user_id=data.get("userId", user_id),
            tier_id=data.get("tierId") or data.get("planId") or free_tier_id,
            is_active=bool(data.get("isActive", True)),
            activated_at=_parse_time(data.get("activatedAt")),
            updated_at=_parse_time(data.get("updatedAt")),
            cancelled_at=_parse_time(data.get("cancelledAt")),
            deleted_at=_parse_time(data.get("deletedAt")),
            product_id=data.get("productId"),
            free_tier_id=free_tier_id,
        )


@dataclass(frozen=True)
class PurchaseResult:
    """Outcome reported by the billing collaborator."""
    product_id: str
    success: bool
    transaction_id: Optional[str] = None
