"""
Usage ledger data models.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from ..plans.models import UNLIMITED, ActionKind, Tier


@dataclass
class UsageRecord:
    """Counters for one (user, UTC day)."""
    user_id: str
    day_key: str
    counts: Dict[ActionKind, int] = field(default_factory=dict)
    last_updated: Optional[datetime] = None

    def count_for(self, action: ActionKind) -> int:
        return self.counts.get(action, 0)

    def as_counts(self) -> Dict[str, int]:
        return {action.value: self.count_for(action) for action in ActionKind}

    def to_document(self) -> Dict[str, Any]:
        document: Dict[str, Any] = {"userId": self.user_id, "date": self.day_key}
        document.update(self.as_counts())
        document["lastUpdated"] = self.last_updated.isoformat() if self.last_updated else None
        return document

    @classmethod
    def from_document(cls, user_id: str, day_key: str, data: Optional[Dict[str, Any]]) -> "UsageRecord":
        """Build a record from a ``daily_usage`` document; ``None`` yields a zeroed record."""
        if not data:
            return cls(user_id=user_id, day_key=day_key, counts={action: 0 for action in ActionKind})

        last_updated = data.get("lastUpdated")
        return cls(
            user_id=user_id,
            day_key=data.get("date", day_key),
            counts={action: int(data.get(action.value, 0) or 0) for action in ActionKind},
            last_updated=datetime.fromisoformat(last_updated) if last_updated else None,
        )


@dataclass(frozen=True)
class IncrementOutcome:
    """Result of one conditional increment attempt that committed."""
    allowed: bool
    count: int
    day_key: str


@dataclass(frozen=True)
class UsageSnapshot:
    """Full-state view of a user's tier and today's usage."""
    user_id: Optional[str]
    tier: Tier
    usage: Dict[str, int]
    limits: Dict[str, int]
    day_key: str
    subscription_state: Optional[str] = None
    degraded: bool = False

    def remaining(self) -> Dict[str, int]:
        """Per-action allowance left today; -1 for unlimited actions."""
        remaining = {}
        for action, limit in self.limits.items():
            remaining[action] = UNLIMITED if limit == UNLIMITED else max(limit - self.usage.get(action, 0), 0)
        return remaining

    def to_dict(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "tier": self.tier.to_dict(),
            "usage": dict(self.usage),
            "limits": dict(self.limits),
            "remaining": self.remaining(),
            "dayKey": self.day_key,
            "subscriptionState": self.subscription_state,
            "degraded": self.degraded,
        }
