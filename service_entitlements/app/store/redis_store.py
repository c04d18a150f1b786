"""
Redis-backed document store.

Documents are JSON strings under ``{prefix}:{collection}/{id}``. Transactions
use WATCH/MULTI/EXEC so a concurrent write to any key read (or written) by
the attempt aborts the commit. Usage counters are bumped by a Lua script that
reads, compares and writes in one server-side step. Every committed write is
published on ``{prefix}:changes:{collection}/{id}`` which is what the snapshot
listeners subscribe to.
"""

import asyncio
import json
from contextlib import contextmanager
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, TypeVar

import redis.asyncio as redis
from redis.exceptions import (
    ConnectionError as RedisConnectionError,
    NoPermissionError,
    RedisError,
    ResponseError,
    TimeoutError as RedisTimeoutError,
    WatchError,
)

from shared.errors import (
    EntitlementError, PermissionDeniedError, StoreUnavailableError, TransactionConflictError,
)
from shared.logging import get_logger
from shared.retry import RetryConfig, retry_on_exception

from .base import (
    CollectionCallback, DocumentChange, DocumentRef, DocumentStore, ErrorCallback,
    SnapshotCallback, Transaction, Unsubscribe,
)

T = TypeVar("T")

_DELETED = object()

# KEYS: document key, change channel. ARGV: field, limit, initial json, updates json, doc id.
CONDITIONAL_INCREMENT_SCRIPT = """
local raw = redis.call("GET", KEYS[1])
local doc
local change = "modified"
if raw then
    doc = cjson.decode(raw)
else
    doc = cjson.decode(ARGV[3])
    change = "added"
end
local limit = tonumber(ARGV[2])
local count = tonumber(doc[ARGV[1]]) or 0
if limit >= 0 and count >= limit then
    return {0, count}
end
doc[ARGV[1]] = count + 1
for key, value in pairs(cjson.decode(ARGV[4])) do
    doc[key] = value
end
redis.call("SET", KEYS[1], cjson.encode(doc))
redis.call("PUBLISH", KEYS[2], cjson.encode({type = change, id = ARGV[5], data = doc}))
return {1, count + 1}
"""


def translate_redis_error(error: BaseException) -> EntitlementError:
    """Map a redis-py exception onto the engine's error taxonomy."""
    if isinstance(error, EntitlementError):
        return error
    if isinstance(error, WatchError):
        return TransactionConflictError(details={"error": str(error)})
    if isinstance(error, NoPermissionError) or (
        isinstance(error, ResponseError) and str(error).startswith("NOPERM")
    ):
        return PermissionDeniedError(str(error))
    if isinstance(error, (RedisConnectionError, RedisTimeoutError, OSError)):
        return StoreUnavailableError(str(error) or "Redis unreachable")
    return StoreUnavailableError(f"Redis error: {error}")


@contextmanager
def _redis_errors():
    try:
        yield
    except (RedisError, OSError) as e:
        raise translate_redis_error(e) from e


class _RedisTransaction(Transaction):
    """One WATCH/MULTI/EXEC attempt."""

    def __init__(self, store: "RedisDocumentStore", pipe):
        self._store = store
        self._pipe = pipe
        self.existing: Dict[str, bool] = {}
        self.writes: Dict[str, Tuple[DocumentRef, Any]] = {}

    async def get(self, ref: DocumentRef) -> Optional[Dict[str, Any]]:
        if ref.path in self.writes:
            pending = self.writes[ref.path][1]
            return None if pending is _DELETED else json.loads(json.dumps(pending))
        return await self.watch(ref)

    async def watch(self, ref: DocumentRef) -> Optional[Dict[str, Any]]:
        key = self._store.key(ref)
        with _redis_errors():
            await self._pipe.watch(key)
            raw = await self._pipe.get(key)
        self.existing[ref.path] = raw is not None
        return json.loads(raw) if raw is not None else None

    def set(self, ref: DocumentRef, data: Dict[str, Any]) -> None:
        self.writes[ref.path] = (ref, json.loads(json.dumps(data)))

    def delete(self, ref: DocumentRef) -> None:
        self.writes[ref.path] = (ref, _DELETED)


class RedisDocumentStore(DocumentStore):
    """DocumentStore implementation on top of redis.asyncio."""

    def __init__(self, redis_url: str, key_prefix: str = "entitlements", client: Optional[redis.Redis] = None):
        self.redis_url = redis_url
        self.key_prefix = key_prefix
        self.logger = get_logger("store.redis")
        self.redis: Optional[redis.Redis] = client
        self._increment_script = None

    async def start(self):
        """Connect and verify the server answers."""
        if self.redis is None:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

        await self._ping()
        self.logger.info("Redis document store started", key_prefix=self.key_prefix)

    @retry_on_exception(exceptions=(StoreUnavailableError,), config=RetryConfig(max_attempts=3, base_delay=0.5))
    async def _ping(self):
        with _redis_errors():
            await self.redis.ping()

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
            self.logger.info("Redis document store stopped")

    async def health_check(self) -> bool:
        try:
            with _redis_errors():
                await self.redis.ping()
            return True
        except EntitlementError as e:
            self.logger.warning("Redis health check failed", error=str(e))
            return False

    def key(self, ref: DocumentRef) -> str:
        return f"{self.key_prefix}:{ref.path}"

    def channel(self, ref: DocumentRef) -> str:
        return f"{self.key_prefix}:changes:{ref.path}"

    async def get_document(self, ref: DocumentRef) -> Optional[Dict[str, Any]]:
        with _redis_errors():
            raw = await self.redis.get(self.key(ref))
        return json.loads(raw) if raw is not None else None

    async def set_document(self, ref: DocumentRef, data: Dict[str, Any], merge: bool = False) -> None:
        async def write(txn: Transaction) -> None:
            current = await txn.get(ref)
            payload = dict(current) if (merge and current) else {}
            payload.update(data)
            txn.set(ref, payload)

        await self.run_transaction(write)

    async def delete_document(self, ref: DocumentRef) -> None:
        async def remove(txn: Transaction) -> None:
            if await txn.get(ref) is not None:
                txn.delete(ref)

        await self.run_transaction(remove)

    async def run_transaction(self, fn: Callable[[Transaction], Awaitable[T]]) -> T:
        with _redis_errors():
            async with self.redis.pipeline(transaction=True) as pipe:
                txn = _RedisTransaction(self, pipe)
                result = await fn(txn)

                if not txn.writes:
                    await pipe.reset()
                    return result

                # Blind writes still need to know whether the key existed
                for path, (ref, _) in txn.writes.items():
                    if path not in txn.existing:
                        await txn.watch(ref)

                pipe.multi()
                for path, (ref, data) in txn.writes.items():
                    existed = txn.existing[path]
                    if data is _DELETED:
                        if not existed:
                            continue
                        pipe.delete(self.key(ref))
                        event = {"type": "removed", "id": ref.doc_id, "data": None}
                    else:
                        pipe.set(self.key(ref), json.dumps(data))
                        event = {"type": "modified" if existed else "added", "id": ref.doc_id, "data": data}
                    pipe.publish(self.channel(ref), json.dumps(event))

                try:
                    await pipe.execute()
                except WatchError as e:
                    self.logger.debug("Transaction conflict", paths=list(txn.existing))
                    raise TransactionConflictError(details={"paths": list(txn.existing)}) from e

        return result

    async def conditional_increment(self, ref: DocumentRef, field: str, limit: int,
                                    initial: Dict[str, Any],
                                    updates: Optional[Dict[str, Any]] = None) -> Tuple[bool, int]:
        if self._increment_script is None:
            self._increment_script = self.redis.register_script(CONDITIONAL_INCREMENT_SCRIPT)

        with _redis_errors():
            incremented, count = await self._increment_script(
                keys=[self.key(ref), self.channel(ref)],
                args=[field, limit, json.dumps(initial), json.dumps(updates or {}), ref.doc_id],
            )
        return bool(incremented), int(count)

    async def list_documents(self, collection: str, prefix: str = "") -> List[str]:
        head = f"{self.key_prefix}:{collection}/"
        ids = []
        with _redis_errors():
            async for key in self.redis.scan_iter(match=f"{head}{prefix}*", count=500):
                ids.append(key[len(head):])
        return sorted(ids)

    # Listeners

    def on_snapshot(self, ref: DocumentRef, callback: SnapshotCallback,
                    on_error: Optional[ErrorCallback] = None) -> Unsubscribe:
        task = asyncio.get_running_loop().create_task(self._listen_document(ref, callback, on_error))
        return task.cancel

    def on_collection_snapshot(self, collection: str, callback: CollectionCallback,
                               on_error: Optional[ErrorCallback] = None) -> Unsubscribe:
        task = asyncio.get_running_loop().create_task(self._listen_collection(collection, callback, on_error))
        return task.cancel

    async def _listen_document(self, ref: DocumentRef, callback: SnapshotCallback,
                               on_error: Optional[ErrorCallback]) -> None:
        pubsub = self.redis.pubsub()
        try:
            with _redis_errors():
                await pubsub.subscribe(self.channel(ref))
                # Subscribed before the read so no commit falls in between
                self._invoke(callback, await self.get_document(ref))
                async for message in pubsub.listen():
                    if message["type"] != "message":
                        continue
                    event = json.loads(message["data"])
                    self._invoke(callback, event.get("data"))
        except EntitlementError as e:
            self._fail(ref.path, on_error, e)
        finally:
            await pubsub.aclose()

    async def _listen_collection(self, collection: str, callback: CollectionCallback,
                                 on_error: Optional[ErrorCallback]) -> None:
        pubsub = self.redis.pubsub()
        try:
            with _redis_errors():
                await pubsub.psubscribe(f"{self.key_prefix}:changes:{collection}/*")
                initial = []
                for doc_id in await self.list_documents(collection):
                    data = await self.get_document(DocumentRef(collection, doc_id))
                    if data is not None:
                        initial.append(DocumentChange("added", doc_id, data))
                if initial:
                    self._invoke(callback, initial)
                async for message in pubsub.listen():
                    if message["type"] != "pmessage":
                        continue
                    event = json.loads(message["data"])
                    self._invoke(callback, [DocumentChange(event["type"], event["id"], event.get("data"))])
        except EntitlementError as e:
            self._fail(collection, on_error, e)
        finally:
            await pubsub.aclose()

    def _invoke(self, callback: Callable[[Any], None], payload: Any) -> None:
        try:
            callback(payload)
        except Exception as e:
            self.logger.error("Snapshot listener raised", error=str(e))

    def _fail(self, key: str, on_error: Optional[ErrorCallback], error: EntitlementError) -> None:
        self.logger.warning("Snapshot listener failed", key=key, code=error.code, error=error.message)
        if on_error is not None:
            on_error(error)
