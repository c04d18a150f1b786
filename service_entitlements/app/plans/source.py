"""
Remote plan-config sources.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

from ..store.base import PLAN_CONFIGS, DocumentChange, DocumentStore, ErrorCallback, Unsubscribe, plan_config_ref
from .models import TierChange

TierChangeCallback = Callable[[List[TierChange]], None]


class PlanConfigSource(ABC):
    """Authoritative source of tier definitions."""

    @abstractmethod
    async def read_tier(self, tier_id: str) -> Optional[Dict[str, Any]]:
        """Raw plan document for ``tier_id``, or ``None`` when not configured."""

    @abstractmethod
    def on_tier_changed(self, callback: TierChangeCallback,
                        on_error: Optional[ErrorCallback] = None) -> Unsubscribe:
        """Push added/modified/removed plan documents to ``callback``."""


class StorePlanSource(PlanConfigSource):
    """Plan documents kept in the ``plan_configs`` collection of the document store."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def read_tier(self, tier_id: str) -> Optional[Dict[str, Any]]:
        return await self.store.get_document(plan_config_ref(tier_id))

    def on_tier_changed(self, callback: TierChangeCallback,
                        on_error: Optional[ErrorCallback] = None) -> Unsubscribe:
        def relay(changes: List[DocumentChange]) -> None:
            callback([TierChange(change.change_type, change.doc_id, change.data) for change in changes])

        return self.store.on_collection_snapshot(PLAN_CONFIGS, relay, on_error)

    async def publish_tier(self, tier_id: str, data: Dict[str, Any]) -> None:
        """Write (or replace) a plan document; listeners pick it up as a push."""
        await self.store.set_document(plan_config_ref(tier_id), data)

    async def remove_tier(self, tier_id: str) -> None:
        await self.store.delete_document(plan_config_ref(tier_id))
