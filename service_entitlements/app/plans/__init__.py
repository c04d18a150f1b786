"""Plan tiers and the cached plan catalog."""

from .catalog import PlanCatalog
from .models import (
    DEFAULT_TIERS, FREE_TIER_ID, UNLIMITED, ActionKind, BillingPeriod, CacheEntry, Tier, TierChange,
    tier_from_document,
)
from .source import PlanConfigSource, StorePlanSource

__all__ = [
    "DEFAULT_TIERS",
    "FREE_TIER_ID",
    "UNLIMITED",
    "ActionKind",
    "BillingPeriod",
    "CacheEntry",
    "PlanCatalog",
    "PlanConfigSource",
    "StorePlanSource",
    "Tier",
    "TierChange",
    "tier_from_document",
]
