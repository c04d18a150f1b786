"""
Plan tier data models for the Entitlement Engine.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Generic, Mapping, Optional, TypeVar

from shared.errors import ValidationError

UNLIMITED = -1

T = TypeVar("T")


class ActionKind(str, Enum):
    """Meterable feature categories. Values double as storage field names."""
    AI_MESSAGE = "aiMessages"
    SUMMARY_NOTE = "summaryNotes"
    DETAILED_NOTE = "detailedNotes"
    BULLET_NOTE = "bulletNotes"
    PDF_EXPORT = "pdfExports"

    @classmethod
    def parse(cls, value: Any) -> "ActionKind":
        """Accept an ActionKind, its value (``aiMessages``) or its name (``AI_MESSAGE``)."""
        if isinstance(value, cls):
            return value
        text = str(value).strip()
        for member in cls:
            if text == member.value or text.upper() == member.name:
                return member
        raise ValidationError(
            f"Unknown action kind: {value!r}",
            details={"allowed": [member.value for member in cls]}
        )


class BillingPeriod(str, Enum):
    """Billing cadence of a tier."""
    NONE = "none"
    MONTHLY = "monthly"
    YEARLY = "yearly"


@dataclass(frozen=True)
class Tier:
    """Immutable snapshot of one tier for one catalog revision."""
    id: str
    display_name: str
    quotas: Mapping[ActionKind, int]
    billing_period: BillingPeriod = BillingPeriod.NONE
    price: float = 0.0
    revision: int = 0

    def __post_init__(self) -> None:
        tier_id = str(self.id).strip()
        if not tier_id:
            raise ValidationError("tier id is required")
        quotas: Dict[ActionKind, int] = {}
        for action, quota in self.quotas.items():
            value = int(quota)
            if value < UNLIMITED:
                raise ValidationError(
                    f"quota for {ActionKind.parse(action).value} must be >= -1",
                    details={"tier_id": tier_id}
                )
            quotas[ActionKind.parse(action)] = value
        object.__setattr__(self, "id", tier_id)
        object.__setattr__(self, "quotas", MappingProxyType(quotas))

    def quota_for(self, action: ActionKind) -> int:
        """Daily allowance for ``action``; actions the tier omits get zero."""
        return self.quotas.get(action, 0)

    def is_unlimited(self, action: ActionKind) -> bool:
        return self.quota_for(action) == UNLIMITED

    def limits(self) -> Dict[str, int]:
        """Quotas keyed by storage field name, for snapshots and API bodies."""
        return {action.value: self.quota_for(action) for action in ActionKind}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "displayName": self.display_name,
            "quotas": self.limits(),
            "billingPeriod": self.billing_period.value,
            "price": self.price,
            "revision": self.revision,
        }


@dataclass(frozen=True)
class CacheEntry(Generic[T]):
    """A cached value with the moment it was fetched and its time-to-live."""
    value: T
    fetched_at: datetime
    ttl: float
    source: str = "store"

    def is_fresh(self, now: datetime) -> bool:
        return (now - self.fetched_at).total_seconds() < self.ttl


def tier_from_document(tier_id: str, data: Optional[Mapping[str, Any]], base: Optional[Tier] = None) -> Tier:
    """Build a Tier from a ``plan_configs/{tierId}`` document.

    Fields present in the document override ``base`` field by field; quotas
    are merged per action, so a document that only lowers ``aiMessages``
    keeps the baked-in values of every other action.
    """
    if data is not None and not isinstance(data, Mapping):
        raise ValidationError(f"plan '{tier_id}' document must be an object")
    data = data or {}
    quotas: Dict[ActionKind, int] = dict(base.quotas) if base else {}
    raw_quotas = data.get("quotas") or data.get("limits") or {}
    if not isinstance(raw_quotas, Mapping):
        raise ValidationError(f"plan '{tier_id}' quotas must be an object")
    for key, value in raw_quotas.items():
        try:
            action = ActionKind.parse(key)
        except ValidationError:
            # Plan documents may carry keys for features this engine does not meter
            continue
        quotas[action] = int(value)

    period = data.get("billingPeriod", base.billing_period.value if base else BillingPeriod.NONE.value)
    return Tier(
        id=tier_id,
        display_name=str(data.get("displayName") or data.get("name") or (base.display_name if base else tier_id)),
        quotas=quotas,
        billing_period=BillingPeriod(period),
        price=float(data.get("price", base.price if base else 0.0)),
        revision=int(data.get("revision", base.revision if base else 0)),
    )


FREE_TIER_ID = "free"

_PRO_QUOTAS = {
    ActionKind.AI_MESSAGE: 500,
    ActionKind.SUMMARY_NOTE: 100,
    ActionKind.DETAILED_NOTE: 100,
    ActionKind.BULLET_NOTE: 100,
    ActionKind.PDF_EXPORT: 20,
}

_PREMIUM_QUOTAS = {
    ActionKind.AI_MESSAGE: 1000,
    ActionKind.SUMMARY_NOTE: UNLIMITED,
    ActionKind.DETAILED_NOTE: UNLIMITED,
    ActionKind.BULLET_NOTE: UNLIMITED,
    ActionKind.PDF_EXPORT: UNLIMITED,
}

DEFAULT_TIERS: Mapping[str, Tier] = MappingProxyType({
    tier.id: tier for tier in (
        Tier(
            id=FREE_TIER_ID,
            display_name="Free Plan",
            quotas={
                ActionKind.AI_MESSAGE: 5,
                ActionKind.SUMMARY_NOTE: 3,
                ActionKind.DETAILED_NOTE: 2,
                ActionKind.BULLET_NOTE: 3,
                ActionKind.PDF_EXPORT: 1,
            },
        ),
        Tier(id="pro-monthly", display_name="Pro Plan (Monthly)", quotas=_PRO_QUOTAS,
             billing_period=BillingPeriod.MONTHLY, price=2.99),
        Tier(id="pro-yearly", display_name="Pro Plan (Yearly)", quotas=_PRO_QUOTAS,
             billing_period=BillingPeriod.YEARLY, price=29.90),
        Tier(id="premium-monthly", display_name="Premium Plan (Monthly)", quotas=_PREMIUM_QUOTAS,
             billing_period=BillingPeriod.MONTHLY, price=4.99),
        Tier(id="premium-yearly", display_name="Premium Plan (Yearly)", quotas=_PREMIUM_QUOTAS,
             billing_period=BillingPeriod.YEARLY, price=49.90),
    )
})


@dataclass
class TierChange:
    """One push-invalidation event from the remote plan-config source."""
    change_type: str  # added | modified | removed
    tier_id: str
    data: Optional[Dict[str, Any]] = field(default=None)
