"""
Entitlements service for the Entitlement Engine.
"""

import asyncio
from typing import Optional

from fastapi import Request
from fastapi.responses import StreamingResponse

from shared.base_service import BaseService
from shared.config import ServiceConfig

from .api_models import (
    CancelPlanRequest, ChangePlanRequest, EntitlementCheckRequest, EntitlementDecisionResponse,
    PlanListResponse, PurchaseRequest, PurchaseResponse, SubscriptionResponse, TierResponse,
    UsageSnapshotResponse,
)
from .clock import Clock, utc_now
from .engine import EntitlementEngine
from .identity import ContextIdentity
from .plans.models import ActionKind
from .store import create_store
from .store.base import DocumentStore
from .subscriptions.models import PurchaseResult
from .usage.models import UsageSnapshot


class EntitlementsService(BaseService):
    """Entitlements service implementation."""

    def __init__(self,
                 config: Optional[ServiceConfig] = None,
                 store: Optional[DocumentStore] = None,
                 clock: Clock = utc_now):
        super().__init__("entitlements", 8011, config=config)

        self.engine = EntitlementEngine(
            store or create_store(self.config),
            ContextIdentity(),
            config=self.config,
            clock=clock,
            metrics=self.metrics,
        )

        self._setup_entitlements_routes()

    def _setup_entitlements_routes(self):
        """Set up entitlements-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "entitlements",
                "message": "Entitlement Engine - Entitlements Service",
                "version": "1.0.0",
                "capabilities": ["plan_catalog", "usage_ledger", "atomic_consume", "change_stream"]
            }

        @self.app.get("/plans", response_model=PlanListResponse)
        async def list_plans():
            """List every plan tier."""
            tiers = await self.engine.list_plans()
            return PlanListResponse(plans=[TierResponse.from_tier(tier) for tier in tiers])

        @self.app.post("/entitlements/check", response_model=EntitlementDecisionResponse)
        async def check_entitlement(request: EntitlementCheckRequest):
            """Peek whether the current user may perform an action."""
            decision = await self.engine.can_perform(ActionKind.parse(request.action))
            return EntitlementDecisionResponse.from_decision(decision)

        @self.app.post("/entitlements/consume", response_model=EntitlementDecisionResponse)
        async def consume_entitlement(request: EntitlementCheckRequest):
            """Atomically check and consume one unit of an action."""
            decision = await self.engine.perform_and_consume(ActionKind.parse(request.action))
            return EntitlementDecisionResponse.from_decision(decision)

        @self.app.get("/entitlements/usage", response_model=UsageSnapshotResponse)
        async def get_usage():
            """Current tier, usage and limits of the current user."""
            snapshot = await self.engine.get_usage_snapshot()
            return UsageSnapshotResponse.from_snapshot(snapshot)

        @self.app.get("/entitlements/stream")
        async def stream_usage(request: Request):
            """Server-Sent Events stream of usage snapshots."""
            queue: asyncio.Queue = asyncio.Queue(maxsize=self.config.notifier_queue_size)

            def on_snapshot(snapshot: UsageSnapshot) -> None:
                if queue.full():
                    queue.get_nowait()
                queue.put_nowait(snapshot)

            unsubscribe = self.engine.subscribe(on_snapshot)

            async def event_stream():
                try:
                    while not await request.is_disconnected():
                        try:
                            snapshot = await asyncio.wait_for(queue.get(), timeout=self.config.heartbeat_interval)
                        except asyncio.TimeoutError:
                            yield ": heartbeat\n\n"
                            continue
                        payload = UsageSnapshotResponse.from_snapshot(snapshot).model_dump_json()
                        yield f"event: snapshot\ndata: {payload}\n\n"
                finally:
                    unsubscribe()

            return StreamingResponse(
                event_stream(),
                media_type="text/event-stream",
                headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}
            )

        @self.app.post("/subscriptions/plan", response_model=SubscriptionResponse)
        async def change_plan(request: ChangePlanRequest):
            """Switch the current user's plan and reset today's usage."""
            subscription = await self.engine.change_plan(request.tier_id)
            return SubscriptionResponse.from_subscription(subscription)

        @self.app.post("/subscriptions/cancel", response_model=SubscriptionResponse)
        async def cancel_plan(request: Optional[CancelPlanRequest] = None):
            """Cancel the current user's plan."""
            at_period_end = request.at_period_end if request else False
            subscription = await self.engine.cancel_plan(at_period_end=at_period_end)
            return SubscriptionResponse.from_subscription(subscription)

        @self.app.post("/billing/purchase", response_model=PurchaseResponse)
        async def purchase(request: PurchaseRequest):
            """Apply a billing outcome as a tier-change trigger."""
            subscription = await self.engine.handle_purchase(PurchaseResult(
                product_id=request.product_id,
                success=request.success,
                transaction_id=request.transaction_id
            ))
            if subscription is None:
                return PurchaseResponse(applied=False)
            return PurchaseResponse(applied=True, subscription=SubscriptionResponse.from_subscription(subscription))

    async def _check_dependencies(self):
        """Check entitlements service dependencies."""
        dependencies = {}

        # Check document store
        try:
            if await self.engine.health_check():
                dependencies["store"] = "ok"
            else:
                dependencies["store"] = "error"
        except Exception:
            dependencies["store"] = "error"

        return dependencies

    async def start(self):
        """Start entitlements service components."""
        await self.engine.start()
        self.logger.info("Entitlements service started", store_backend=self.config.store_backend)

    async def stop(self):
        """Stop entitlements service components."""
        await self.engine.stop()
        self.logger.info("Entitlements service stopped")


def create_app():
    """Create entitlements service application."""
    service = EntitlementsService()
    return service.app


if __name__ == "__main__":
    service = EntitlementsService()
    service.run()
