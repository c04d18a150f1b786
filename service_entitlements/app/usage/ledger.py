"""
Usage ledger for the Entitlement Engine.

Counters live in one ``daily_usage/{userId}_{dayKey}`` document per user and
UTC day. Increments use the store's atomic conditional increment, so the quota
comparison and the write can never be split by another writer. Resets join the
caller's transaction.
"""

from typing import List, Optional

from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..clock import Clock, day_key, utc_now
from ..plans.models import UNLIMITED, ActionKind
from ..store.base import DAILY_USAGE, DocumentRef, DocumentStore, Transaction, usage_ref
from .models import IncrementOutcome, UsageRecord


class UsageLedger:
    """Atomic per-user-per-day counters."""

    def __init__(self,
                 store: DocumentStore,
                 clock: Clock = utc_now,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.clock = clock
        self.metrics = metrics
        self.logger = get_logger("usage.ledger")

    def today(self) -> str:
        return day_key(self.clock())

    def ref_for_today(self, user_id: str) -> DocumentRef:
        return usage_ref(user_id, self.today())

    async def increment(self, user_id: str, action: ActionKind) -> int:
        """Unconditionally add one to today's counter; returns the new count."""
        outcome = await self.try_increment(user_id, action, UNLIMITED)
        return outcome.count

    async def try_increment(self, user_id: str, action: ActionKind, quota: int) -> IncrementOutcome:
        """Add one to today's counter unless it already reached ``quota``.

        The quota comparison and the write are one atomic store operation, so
        concurrent callers can never push the count past ``quota``. A denied
        attempt writes nothing and ``count`` is the current value.
        """
        action = ActionKind.parse(action)
        now = self.clock()
        today = day_key(now)
        ref = usage_ref(user_id, today)
        initial = UsageRecord.from_document(user_id, today, None).to_document()

        allowed, count = await self.store.conditional_increment(
            ref, action.value, quota, initial, updates={"lastUpdated": now.isoformat()}
        )
        outcome = IncrementOutcome(allowed=allowed, count=count, day_key=today)

        if outcome.allowed:
            if self.metrics is not None:
                self.metrics.increment_counter("usage_increments_total", action=action.value)
            self.logger.debug("Usage incremented", user_id=user_id, action=action.value,
                              count=outcome.count, day_key=outcome.day_key)
        return outcome

    async def get_today(self, user_id: str) -> UsageRecord:
        """Today's record; a missing document reads as zero and is not created."""
        today = self.today()
        data = await self.store.get_document(usage_ref(user_id, today))
        return UsageRecord.from_document(user_id, today, data)

    def reset_today(self, txn: Transaction, user_id: str) -> str:
        """Buffer deletion of today's record inside the caller's transaction."""
        today = self.today()
        txn.delete(usage_ref(user_id, today))
        return today

    async def expired_records(self, before_day_key: str) -> List[str]:
        """Ids of usage records whose day is strictly before ``before_day_key``."""
        expired = []
        for doc_id in await self.store.list_documents(DAILY_USAGE):
            _, _, record_day = doc_id.rpartition("_")
            if record_day and record_day < before_day_key:
                expired.append(doc_id)
        return expired

    async def reclaim(self, before_day_key: str) -> int:
        """Delete records older than ``before_day_key``. Returns the number removed."""
        removed = 0
        for doc_id in await self.expired_records(before_day_key):
            await self.store.delete_document(DocumentRef(DAILY_USAGE, doc_id))
            removed += 1

        self.logger.info("Usage records reclaimed", before=before_day_key, removed=removed)
        return removed
