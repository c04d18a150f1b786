"""Per-user, per-day usage counters."""

from .ledger import UsageLedger
from .models import IncrementOutcome, UsageRecord, UsageSnapshot

__all__ = ["IncrementOutcome", "UsageLedger", "UsageRecord", "UsageSnapshot"]
