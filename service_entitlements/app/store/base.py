"""
Document store interface consumed by the Entitlement Engine.

The engine only needs a small, Firestore-shaped surface: keyed JSON documents
grouped in collections, single-attempt optimistic transactions, and change
listeners. Adapters translate their driver's exceptions into the
``shared.errors`` taxonomy so nothing above this layer sees a driver error.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from shared.errors import ValidationError

T = TypeVar("T")

SUBSCRIPTIONS = "subscriptions"
DAILY_USAGE = "daily_usage"
PLAN_CONFIGS = "plan_configs"

Unsubscribe = Callable[[], None]
SnapshotCallback = Callable[[Optional[Dict[str, Any]]], None]
ErrorCallback = Callable[[Exception], None]


@dataclass(frozen=True)
class DocumentRef:
    """Address of one document."""
    collection: str
    doc_id: str

    def __post_init__(self) -> None:
        if not self.collection or "/" in self.collection:
            raise ValidationError(f"invalid collection name: {self.collection!r}")
        if not self.doc_id or "/" in self.doc_id:
            raise ValidationError(f"invalid document id: {self.doc_id!r}")

    @property
    def path(self) -> str:
        return f"{self.collection}/{self.doc_id}"


@dataclass(frozen=True)
class DocumentChange:
    """One entry of a collection listener event."""
    change_type: str  # added | modified | removed
    doc_id: str
    data: Optional[Dict[str, Any]]


CollectionCallback = Callable[[List[DocumentChange]], None]


def subscription_ref(user_id: str) -> DocumentRef:
    return DocumentRef(SUBSCRIPTIONS, user_id)


def usage_ref(user_id: str, day: str) -> DocumentRef:
    return DocumentRef(DAILY_USAGE, f"{user_id}_{day}")


def plan_config_ref(tier_id: str) -> DocumentRef:
    return DocumentRef(PLAN_CONFIGS, tier_id)


class Transaction(ABC):
    """Read-your-reads view of the store whose writes apply atomically at commit."""

    @abstractmethod
    async def get(self, ref: DocumentRef) -> Optional[Dict[str, Any]]:
        """Read a document and register it for conflict detection."""

    @abstractmethod
    def set(self, ref: DocumentRef, data: Dict[str, Any]) -> None:
        """Buffer a full overwrite of ``ref``."""

    @abstractmethod
    def delete(self, ref: DocumentRef) -> None:
        """Buffer a delete of ``ref``."""


class DocumentStore(ABC):
    """Transactional document/KV store."""

    @abstractmethod
    async def get_document(self, ref: DocumentRef) -> Optional[Dict[str, Any]]:
        """Read one document; ``None`` when it does not exist."""

    @abstractmethod
    async def set_document(self, ref: DocumentRef, data: Dict[str, Any], merge: bool = False) -> None:
        """Write one document, optionally merging top-level fields."""

    @abstractmethod
    async def delete_document(self, ref: DocumentRef) -> None:
        """Delete one document (no-op when absent)."""

    @abstractmethod
    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        """Run ONE optimistic attempt of ``fn``.

        Raises ``TransactionConflictError`` when a document read by ``fn``
        changed before commit; the caller owns the retry policy.
        """

    @abstractmethod
    async def conditional_increment(self, ref: DocumentRef, field: str, limit: int,
                                    initial: Dict[str, Any],
                                    updates: Optional[Dict[str, Any]] = None) -> Tuple[bool, int]:
        """Atomically add one to ``field`` unless it already reached ``limit``.

        A missing document starts from ``initial``. A negative ``limit`` means
        no limit. ``updates`` are merged into the document on increment only.
        Returns ``(incremented, count)``; a refused increment writes nothing.
        """

    @abstractmethod
    def on_snapshot(self, ref: DocumentRef, callback: SnapshotCallback,
                    on_error: Optional[ErrorCallback] = None) -> Unsubscribe:
        """Listen to one document. The current state is delivered first."""

    @abstractmethod
    def on_collection_snapshot(self, collection: str, callback: CollectionCallback,
                               on_error: Optional[ErrorCallback] = None) -> Unsubscribe:
        """Listen to added/modified/removed documents of a collection."""

    @abstractmethod
    async def list_documents(self, collection: str, prefix: str = "") -> List[str]:
        """Ids of documents in ``collection`` whose id starts with ``prefix``."""

    async def start(self) -> None:
        return None

    async def health_check(self) -> bool:
        return True

    async def close(self) -> None:
        return None
