#!/usr/bin/env python3
"""
Reclaim daily usage records that fell out of the retention window.

Usage records are only needed for the current day's decisions and a bounded
history for display. This helper lists (and, unless ``--dry-run`` is given,
deletes) every ``daily_usage`` document older than the retention window. It
can run from a developer workstation, a cron job or CI.
"""

import argparse
import asyncio
import json
import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

from shared.config import BaseConfig
from shared.logging import configure_logging
from service_entitlements.app.clock import day_key, utc_now
from service_entitlements.app.store.redis_store import RedisDocumentStore
from service_entitlements.app.usage.ledger import UsageLedger


def cutoff_day(retention_days: int, before: Optional[str] = None) -> str:
    """First day that is kept; everything strictly before it is reclaimable."""
    if before:
        return before
    return day_key(utc_now() - timedelta(days=retention_days))


async def reclaim(
    *,
    redis_url: str,
    key_prefix: str,
    before_day_key: str,
    dry_run: bool,
) -> dict:
    """Execute the sweep and return the summary."""
    store = RedisDocumentStore(redis_url, key_prefix=key_prefix)
    await store.start()
    try:
        ledger = UsageLedger(store)
        expired = await ledger.expired_records(before_day_key)
        removed = 0 if dry_run else await ledger.reclaim(before_day_key)
    finally:
        await store.close()

    return {
        "before": before_day_key,
        "candidates": len(expired),
        "removed": removed,
        "dry_run": dry_run,
    }


def _parse_args(config: BaseConfig) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reclaim expired daily usage records.")
    parser.add_argument("--redis-url", default=config.redis_url, help="Redis connection URL")
    parser.add_argument("--key-prefix", default=config.redis_key_prefix, help="Document key prefix")
    parser.add_argument("--retention-days", type=int, default=config.usage_retention_days,
                        help="Days of usage history to keep")
    parser.add_argument("--before", default=None, help="Explicit cutoff day (yyyy-mm-dd); overrides retention")
    parser.add_argument("--dry-run", action="store_true", help="Only count reclaimable records")
    parser.add_argument("--output", type=Path, default=None, help="Optional path to write JSON summary")
    return parser.parse_args()


def main() -> int:
    config = BaseConfig()
    args = _parse_args(config)
    configure_logging("reclaim-usage", config.log_level)

    try:
        summary = asyncio.run(
            reclaim(
                redis_url=args.redis_url,
                key_prefix=args.key_prefix,
                before_day_key=cutoff_day(args.retention_days, args.before),
                dry_run=args.dry_run,
            )
        )
    except KeyboardInterrupt:
        return 130
    except Exception as exc:  # pragma: no cover - CLI surface
        print(f"[reclaim-usage] failed: {exc}", file=sys.stderr)
        return 1

    if args.dry_run:
        print("[reclaim-usage] DRY RUN - no records deleted")

    print(json.dumps(summary, indent=2))

    if args.output:
        args.output.write_text(json.dumps(summary, indent=2))

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
