"""
In-process document store.

Backs local development and the test-suite. It keeps the same contract as the
Redis adapter: versioned documents, commit-time conflict detection for
transactions, and listeners that are notified on the event loop after the
writer's call has returned.
"""

import asyncio
import copy
import itertools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

from shared.errors import TransactionConflictError
from shared.logging import get_logger

from .base import (
    CollectionCallback, DocumentChange, DocumentRef, DocumentStore, ErrorCallback,
    SnapshotCallback, Transaction, Unsubscribe,
)

T = TypeVar("T")

_DELETED = object()


@dataclass
class _Listener:
    listener_id: int
    loop: asyncio.AbstractEventLoop
    callback: Callable[[Any], None]
    on_error: Optional[ErrorCallback]
    active: bool = True


class _MemoryTransaction(Transaction):
    """One optimistic attempt against an InMemoryDocumentStore."""

    def __init__(self, store: "InMemoryDocumentStore"):
        self._store = store
        self.read_versions: Dict[str, int] = {}
        self.writes: Dict[str, Tuple[DocumentRef, Any]] = {}

    async def get(self, ref: DocumentRef) -> Optional[Dict[str, Any]]:
        if ref.path in self.writes:
            pending = self.writes[ref.path][1]
            return None if pending is _DELETED else copy.deepcopy(pending)
        await asyncio.sleep(0)
        version, data = self._store._read(ref.path)
        self.read_versions.setdefault(ref.path, version)
        return data

    def set(self, ref: DocumentRef, data: Dict[str, Any]) -> None:
        self.writes[ref.path] = (ref, copy.deepcopy(data))

    def delete(self, ref: DocumentRef) -> None:
        self.writes[ref.path] = (ref, _DELETED)


class InMemoryDocumentStore(DocumentStore):
    """Dictionary-backed DocumentStore with optimistic transactions."""

    def __init__(self):
        self.logger = get_logger("store.memory")
        self._documents: Dict[str, Dict[str, Any]] = {}
        # Versions survive deletes so a delete-then-recreate still conflicts
        self._versions: Dict[str, int] = {}
        self._doc_listeners: Dict[str, Dict[int, _Listener]] = {}
        self._collection_listeners: Dict[str, Dict[int, _Listener]] = {}
        self._listener_ids = itertools.count(1)
        self.commit_count = 0

    # Reads / writes

    def _read(self, path: str) -> Tuple[int, Optional[Dict[str, Any]]]:
        data = self._documents.get(path)
        return self._versions.get(path, 0), copy.deepcopy(data) if data is not None else None

    async def get_document(self, ref: DocumentRef) -> Optional[Dict[str, Any]]:
        return self._read(ref.path)[1]

    async def set_document(self, ref: DocumentRef, data: Dict[str, Any], merge: bool = False) -> None:
        payload = copy.deepcopy(data)
        if merge and ref.path in self._documents:
            merged = copy.deepcopy(self._documents[ref.path])
            merged.update(payload)
            payload = merged
        self._commit({ref.path: (ref, payload)})

    async def delete_document(self, ref: DocumentRef) -> None:
        self._commit({ref.path: (ref, _DELETED)})

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        txn = _MemoryTransaction(self)
        result = await fn(txn)

        for path, version in txn.read_versions.items():
            if self._versions.get(path, 0) != version:
                self.logger.debug("Transaction conflict", path=path)
                raise TransactionConflictError(details={"path": path})

        if txn.writes:
            self._commit(txn.writes)
        return result

    async def conditional_increment(self, ref: DocumentRef, field: str, limit: int,
                                    initial: Dict[str, Any],
                                    updates: Optional[Dict[str, Any]] = None) -> Tuple[bool, int]:
        await asyncio.sleep(0)
        # No await between the read and the commit below
        current = self._documents.get(ref.path)
        document = copy.deepcopy(current if current is not None else initial)
        count = int(document.get(field, 0) or 0)
        if 0 <= limit <= count:
            return False, count

        document[field] = count + 1
        document.update(updates or {})
        self._commit({ref.path: (ref, document)})
        return True, count + 1

    async def list_documents(self, collection: str, prefix: str = "") -> List[str]:
        head = f"{collection}/"
        return sorted(
            path[len(head):] for path in self._documents
            if path.startswith(head) and path[len(head):].startswith(prefix)
        )

    def _commit(self, writes: Dict[str, Tuple[DocumentRef, Any]]) -> None:
        changes: List[Tuple[DocumentRef, DocumentChange]] = []
        for path, (ref, data) in writes.items():
            existed = path in self._documents
            if data is _DELETED:
                if not existed:
                    continue
                del self._documents[path]
                change = DocumentChange("removed", ref.doc_id, None)
            else:
                self._documents[path] = copy.deepcopy(data)
                change = DocumentChange("modified" if existed else "added", ref.doc_id, copy.deepcopy(data))
            self._versions[path] = self._versions.get(path, 0) + 1
            changes.append((ref, change))

        self.commit_count += 1
        self._notify(changes)

    # Listeners

    def on_snapshot(self, ref: DocumentRef, callback: SnapshotCallback,
                    on_error: Optional[ErrorCallback] = None) -> Unsubscribe:
        listener = self._register(self._doc_listeners, ref.path, callback, on_error)
        self._schedule(listener, self._read(ref.path)[1])
        return lambda: self._unregister(self._doc_listeners, ref.path, listener)

    def on_collection_snapshot(self, collection: str, callback: CollectionCallback,
                               on_error: Optional[ErrorCallback] = None) -> Unsubscribe:
        listener = self._register(self._collection_listeners, collection, callback, on_error)
        head = f"{collection}/"
        initial = [
            DocumentChange("added", path[len(head):], copy.deepcopy(data))
            for path, data in sorted(self._documents.items()) if path.startswith(head)
        ]
        if initial:
            self._schedule(listener, initial)
        return lambda: self._unregister(self._collection_listeners, collection, listener)

    def fail_listeners(self, key: str, error: Exception) -> int:
        """Push ``error`` to every listener on a document path or collection.

        Mirrors a backend revoking a live listener (e.g. a rules change
        turning it into a permission error). Failed listeners are detached.
        """
        failed = 0
        for registry in (self._doc_listeners, self._collection_listeners):
            for listener in list(registry.get(key, {}).values()):
                self._unregister(registry, key, listener)
                if listener.on_error is not None:
                    listener.loop.call_soon(self._deliver_error, listener, error)
                failed += 1
        return failed

    def listener_count(self, key: Optional[str] = None) -> int:
        registries = (self._doc_listeners, self._collection_listeners)
        if key is None:
            return sum(len(listeners) for registry in registries for listeners in registry.values())
        return sum(len(registry.get(key, {})) for registry in registries)

    def _register(self, registry: Dict[str, Dict[int, _Listener]], key: str,
                  callback: Callable[[Any], None], on_error: Optional[ErrorCallback]) -> _Listener:
        listener = _Listener(
            listener_id=next(self._listener_ids),
            loop=asyncio.get_running_loop(),
            callback=callback,
            on_error=on_error,
        )
        registry.setdefault(key, {})[listener.listener_id] = listener
        return listener

    @staticmethod
    def _unregister(registry: Dict[str, Dict[int, _Listener]], key: str, listener: _Listener) -> None:
        listener.active = False
        listeners = registry.get(key)
        if listeners is None:
            return
        listeners.pop(listener.listener_id, None)
        if not listeners:
            del registry[key]

    def _notify(self, changes: List[Tuple[DocumentRef, DocumentChange]]) -> None:
        by_collection: Dict[str, List[DocumentChange]] = {}
        for ref, change in changes:
            for listener in list(self._doc_listeners.get(ref.path, {}).values()):
                self._schedule(listener, copy.deepcopy(change.data))
            by_collection.setdefault(ref.collection, []).append(change)

        for collection, collection_changes in by_collection.items():
            for listener in list(self._collection_listeners.get(collection, {}).values()):
                self._schedule(listener, copy.deepcopy(collection_changes))

    def _schedule(self, listener: _Listener, payload: Any) -> None:
        listener.loop.call_soon(self._deliver, listener, payload)

    def _deliver(self, listener: _Listener, payload: Any) -> None:
        if not listener.active:
            return
        try:
            listener.callback(payload)
        except Exception as e:
            self.logger.error("Snapshot listener raised", listener_id=listener.listener_id, error=str(e))

    def _deliver_error(self, listener: _Listener, error: Exception) -> None:
        try:
            listener.on_error(error)
        except Exception as e:
            self.logger.error("Snapshot error handler raised", listener_id=listener.listener_id, error=str(e))
