"""
Change notifier for the Entitlement Engine.

One pair of store listeners (subscription document + today's usage document)
is shared by every subscriber of a user. Each change produces a full-state
UsageSnapshot that is queued per subscriber and delivered by that
subscriber's own task, so a slow callback never blocks the listener.
"""

import asyncio
import inspect
import threading
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from shared.errors import PermissionDeniedError, StoreUnavailableError
from shared.logging import get_logger
from shared.metrics import MetricsCollector

from ..clock import Clock, day_key, seconds_until_next_day, utc_now
from ..plans.catalog import PlanCatalog
from ..policy import on_unauthorized_default
from ..store.base import DocumentStore, Unsubscribe, subscription_ref, usage_ref
from ..usage.models import UsageRecord, UsageSnapshot
from .models import Subscription, SubscriptionState

SnapshotListener = Callable[[UsageSnapshot], Union[None, Awaitable[None]]]


@dataclass
class _Subscriber:
    subscriber_id: str
    callback: SnapshotListener
    queue: asyncio.Queue
    task: Optional[asyncio.Task] = None


@dataclass
class _UserFeed:
    user_id: str
    day_key: str
    subscribers: Dict[str, _Subscriber] = field(default_factory=dict)
    subscription_data: Optional[Dict[str, Any]] = None
    usage_data: Optional[Dict[str, Any]] = None
    has_subscription: bool = False
    has_usage: bool = False
    version: int = 0
    latest: Optional[UsageSnapshot] = None
    detach_subscription: Optional[Unsubscribe] = None
    detach_usage: Optional[Unsubscribe] = None
    failures: int = 0
    reattach_task: Optional[asyncio.Task] = None


class ChangeNotifier:
    """Fans tier/usage changes out to per-user subscribers."""

    def __init__(self,
                 store: DocumentStore,
                 catalog: PlanCatalog,
                 clock: Clock = utc_now,
                 queue_size: int = 100,
                 reattach_base_delay: float = 1.0,
                 reattach_max_delay: float = 60.0,
                 metrics: Optional[MetricsCollector] = None):
        self.store = store
        self.catalog = catalog
        self.clock = clock
        self.queue_size = queue_size
        self.reattach_base_delay = reattach_base_delay
        self.reattach_max_delay = reattach_max_delay
        self.metrics = metrics
        self.logger = get_logger("subscriptions.notifier")

        self._feeds: Dict[str, _UserFeed] = {}
        self._lock = threading.RLock()
        self._tasks = set()
        self._rollover_task: Optional[asyncio.Task] = None

    async def start(self):
        """Start the midnight rollover timer."""
        if self._rollover_task is None:
            self._rollover_task = asyncio.create_task(self._rollover_loop())

    async def stop(self):
        if self._rollover_task is not None:
            self._rollover_task.cancel()
            self._rollover_task = None
        with self._lock:
            pairs = [
                (user_id, subscriber_id)
                for user_id, feed in self._feeds.items()
                for subscriber_id in feed.subscribers
            ]
        for user_id, subscriber_id in pairs:
            self._unsubscribe(user_id, subscriber_id)
        for task in list(self._tasks):
            task.cancel()

    def subscriber_count(self, user_id: Optional[str] = None) -> int:
        with self._lock:
            if user_id is not None:
                feed = self._feeds.get(user_id)
                return len(feed.subscribers) if feed else 0
            return sum(len(feed.subscribers) for feed in self._feeds.values())

    def subscribe(self, user_id: str, callback: SnapshotListener) -> Unsubscribe:
        """Deliver a full snapshot to ``callback`` on every change for ``user_id``.

        Must be called from a running event loop. Callbacks may be plain
        functions or coroutines and may be invoked more than once with the
        same state.
        """
        subscriber = _Subscriber(
            subscriber_id=str(uuid.uuid4()),
            callback=callback,
            queue=asyncio.Queue(maxsize=self.queue_size),
        )
        subscriber.task = asyncio.get_running_loop().create_task(self._deliver(user_id, subscriber))

        with self._lock:
            feed = self._feeds.get(user_id)
            if feed is None:
                feed = _UserFeed(user_id=user_id, day_key=day_key(self.clock()))
                self._feeds[user_id] = feed
                self._attach(feed)
            feed.subscribers[subscriber.subscriber_id] = subscriber
            latest = feed.latest
            self._update_gauge()

        if latest is not None:
            self._enqueue(subscriber, latest)

        self.logger.info("Snapshot subscriber added", user_id=user_id, subscriber_id=subscriber.subscriber_id)

        detached = False

        def unsubscribe() -> None:
            nonlocal detached
            if not detached:
                detached = True
                self._unsubscribe(user_id, subscriber.subscriber_id)

        return unsubscribe

    async def resync(self) -> int:
        """Re-point usage listeners at the current UTC day and re-attach failed listeners.

        Returns the number of user feeds that were re-attached.
        """
        today = day_key(self.clock())
        resynced = 0
        with self._lock:
            feeds = list(self._feeds.values())
        for feed in feeds:
            if feed.day_key != today or not self._attached(feed):
                self._reattach(feed, today)
                resynced += 1
        if resynced:
            self.logger.info("Notifier feeds resynced", day_key=today, feeds=resynced)
        return resynced

    async def current_snapshot(self, user_id: Optional[str]) -> UsageSnapshot:
        """Read the current state directly from the store (no listener involved)."""
        today = day_key(self.clock())
        if not user_id:
            return on_unauthorized_default(self.catalog.free_tier, today)
        try:
            subscription_data = await self.store.get_document(subscription_ref(user_id))
            usage_data = await self.store.get_document(usage_ref(user_id, today))
        except (PermissionDeniedError, StoreUnavailableError) as e:
            return on_unauthorized_default(self.catalog.free_tier, today, user_id, e)
        return await self._compose(user_id, today, subscription_data, usage_data)

    async def _compose(self, user_id: str, today: str,
                       subscription_data: Optional[Dict[str, Any]],
                       usage_data: Optional[Dict[str, Any]]) -> UsageSnapshot:
        subscription = Subscription.from_document(user_id, subscription_data,
                                                  free_tier_id=self.catalog.free_tier_id)
        if subscription is None:
            tier = await self.catalog.get_tier(self.catalog.free_tier_id)
            state = SubscriptionState.FREE.value
        else:
            tier = await self.catalog.get_tier(subscription.entitled_tier_id(self.catalog.free_tier_id))
            state = subscription.state.value

        record = UsageRecord.from_document(user_id, today, usage_data)
        return UsageSnapshot(
            user_id=user_id,
            tier=tier,
            usage=record.as_counts(),
            limits=tier.limits(),
            day_key=today,
            subscription_state=state,
        )

    # Store listeners

    def _attach(self, feed: _UserFeed) -> None:
        user_id, today = feed.user_id, feed.day_key
        feed.detach_subscription = self.store.on_snapshot(
            subscription_ref(user_id),
            lambda data: self._on_subscription(feed, data),
            lambda error: self._on_error(feed, error),
        )
        feed.detach_usage = self.store.on_snapshot(
            usage_ref(user_id, today),
            lambda data: self._on_usage(feed, today, data),
            lambda error: self._on_error(feed, error),
        )

    def _reattach(self, feed: _UserFeed, today: str) -> None:
        self._detach(feed)
        feed.day_key = today
        feed.usage_data = None
        feed.has_usage = False
        feed.has_subscription = False
        self._attach(feed)

    @staticmethod
    def _attached(feed: _UserFeed) -> bool:
        return feed.detach_subscription is not None and feed.detach_usage is not None

    @staticmethod
    def _detach(feed: _UserFeed) -> None:
        for detach in (feed.detach_subscription, feed.detach_usage):
            if detach is not None:
                detach()
        feed.detach_subscription = None
        feed.detach_usage = None

    def _on_subscription(self, feed: _UserFeed, data: Optional[Dict[str, Any]]) -> None:
        feed.failures = 0
        feed.subscription_data = data
        feed.has_subscription = True
        self._changed(feed)

    def _on_usage(self, feed: _UserFeed, listened_day: str, data: Optional[Dict[str, Any]]) -> None:
        if listened_day != feed.day_key:
            return
        feed.failures = 0
        feed.usage_data = data
        feed.has_usage = True
        self._changed(feed)

    def _on_error(self, feed: _UserFeed, error: Exception) -> None:
        self._detach(feed)
        feed.version += 1
        snapshot = on_unauthorized_default(self.catalog.free_tier, feed.day_key, feed.user_id, error,
                                           context="notifier")
        self._broadcast(feed, snapshot)
        self._schedule_reattach(feed)

    def _schedule_reattach(self, feed: _UserFeed) -> None:
        if feed.reattach_task is not None and not feed.reattach_task.done():
            return
        delay = min(self.reattach_base_delay * (2 ** min(feed.failures, 16)), self.reattach_max_delay)
        feed.failures += 1
        feed.reattach_task = self._spawn(self._reattach_later(feed, delay))
        self.logger.info("Notifier feed reattach scheduled", user_id=feed.user_id,
                         delay=delay, attempt=feed.failures)

    async def _reattach_later(self, feed: _UserFeed, delay: float) -> None:
        await asyncio.sleep(delay)
        with self._lock:
            if self._feeds.get(feed.user_id) is not feed or self._attached(feed):
                return
            self._reattach(feed, day_key(self.clock()))
        if self.metrics is not None:
            self.metrics.increment_counter("notifier_reattach_total")
        self.logger.info("Notifier feed reattached", user_id=feed.user_id, day_key=feed.day_key)

    def _spawn(self, coro: Awaitable[None]) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _changed(self, feed: _UserFeed) -> None:
        feed.version += 1
        if not (feed.has_subscription and feed.has_usage):
            return
        self._spawn(self._publish(feed, feed.version))

    async def _publish(self, feed: _UserFeed, version: int) -> None:
        subscription_data, usage_data = feed.subscription_data, feed.usage_data
        try:
            snapshot = await self._compose(feed.user_id, feed.day_key, subscription_data, usage_data)
        except (ValueError, TypeError) as e:
            snapshot = on_unauthorized_default(self.catalog.free_tier, feed.day_key, feed.user_id, e,
                                               context="notifier")
        if feed.version != version:
            # A newer change is already being published
            return
        self._broadcast(feed, snapshot)

    def _broadcast(self, feed: _UserFeed, snapshot: UsageSnapshot) -> None:
        with self._lock:
            feed.latest = snapshot
            subscribers = list(feed.subscribers.values())
        for subscriber in subscribers:
            self._enqueue(subscriber, snapshot)

    def _enqueue(self, subscriber: _Subscriber, snapshot: UsageSnapshot) -> None:
        if subscriber.queue.full():
            # Snapshots are full state; the oldest one is safe to drop
            subscriber.queue.get_nowait()
            self.logger.warning("Subscriber queue full, dropping oldest snapshot",
                                subscriber_id=subscriber.subscriber_id)
        subscriber.queue.put_nowait(snapshot)

    async def _deliver(self, user_id: str, subscriber: _Subscriber) -> None:
        while True:
            snapshot = await subscriber.queue.get()
            try:
                result = subscriber.callback(snapshot)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.logger.error("Snapshot callback raised", user_id=user_id,
                                  subscriber_id=subscriber.subscriber_id, error=str(e))

    def _unsubscribe(self, user_id: str, subscriber_id: str) -> None:
        with self._lock:
            feed = self._feeds.get(user_id)
            if feed is None:
                return
            subscriber = feed.subscribers.pop(subscriber_id, None)
            if not feed.subscribers:
                self._detach(feed)
                del self._feeds[user_id]
            self._update_gauge()

        if subscriber is not None and subscriber.task is not None:
            subscriber.task.cancel()
        self.logger.info("Snapshot subscriber removed", user_id=user_id, subscriber_id=subscriber_id)

    def _update_gauge(self) -> None:
        if self.metrics is not None:
            total = sum(len(feed.subscribers) for feed in self._feeds.values())
            self.metrics.set_gauge("notifier_subscribers", total)

    async def _rollover_loop(self) -> None:
        while True:
            delay = seconds_until_next_day(self.clock()) + 1.0
            await asyncio.sleep(delay)
            await self.resync()
