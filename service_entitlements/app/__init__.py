"""
Entitlements Service package for the Entitlement Engine.

This package decides whether a user may perform a metered action under their
subscription tier and keeps the daily usage counters behind that decision:

- app.plans: Tier definitions and the TTL/push-invalidated plan catalog.
- app.usage: Per-user, per-day transactional usage ledger.
- app.checker: Non-consuming peek and atomic check-and-consume.
- app.subscriptions: Subscription records, tier assignment, change notifier.
- app.store: Document store interface with in-memory and Redis adapters.
- app.engine: The injected engine instance exposing the public operations.
- app.main: HTTP surface.

Guidelines:
- Counters are only ever changed inside a store transaction.
- Catalog reads never fail; they degrade to stale or baked-in tiers.
- Read paths degrade to the free-tier default view instead of raising.
"""
