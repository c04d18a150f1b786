"""Document store adapters."""

from shared.config import BaseConfig
from shared.errors import ValidationError

from .base import (
    DAILY_USAGE, PLAN_CONFIGS, SUBSCRIPTIONS, DocumentChange, DocumentRef, DocumentStore, Transaction,
    plan_config_ref, subscription_ref, usage_ref,
)
from .memory import InMemoryDocumentStore
from .redis_store import RedisDocumentStore


def create_store(config: BaseConfig) -> DocumentStore:
    """Build the store selected by ``config.store_backend``."""
    backend = config.store_backend.lower()
    if backend == "memory":
        return InMemoryDocumentStore()
    if backend == "redis":
        return RedisDocumentStore(config.redis_url, key_prefix=config.redis_key_prefix)
    raise ValidationError(f"Unknown store backend: {config.store_backend}", details={"allowed": ["memory", "redis"]})


__all__ = [
    "DAILY_USAGE",
    "PLAN_CONFIGS",
    "SUBSCRIPTIONS",
    "DocumentChange",
    "DocumentRef",
    "DocumentStore",
    "InMemoryDocumentStore",
    "RedisDocumentStore",
    "Transaction",
    "create_store",
    "plan_config_ref",
    "subscription_ref",
    "usage_ref",
]
