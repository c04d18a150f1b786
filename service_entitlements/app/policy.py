"""
Degraded-view policy.

Listener and authorization failures on the entitlement read paths all end in
the same place: the free tier with zero usage. Call sites use this function
instead of building their own default.
"""

from typing import Optional

from shared.logging import get_logger

from .plans.models import Tier
from .usage.models import UsageSnapshot

logger = get_logger("policy.defaults")


def on_unauthorized_default(free_tier: Tier,
                            day_key: str,
                            user_id: Optional[str] = None,
                            error: Optional[BaseException] = None,
                            context: str = "snapshot") -> UsageSnapshot:
    """Return the fixed default view (free tier, zero usage)."""
    if error is not None:
        logger.warning(
            "Falling back to free-tier default view",
            context=context,
            user_id=user_id,
            error_type=type(error).__name__,
            error=str(error)
        )

    limits = free_tier.limits()
    return UsageSnapshot(
        user_id=user_id,
        tier=free_tier,
        usage={action: 0 for action in limits},
        limits=limits,
        day_key=day_key,
        degraded=True,
    )
