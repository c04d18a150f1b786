"""Allow/deny decisions over tier quotas and the usage ledger."""

from .checker import EntitlementChecker, EntitlementDecision, limit_reason

__all__ = ["EntitlementChecker", "EntitlementDecision", "limit_reason"]
