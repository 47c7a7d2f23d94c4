#!/usr/bin/env python3
"""
FoundMatch — Match Expiry Sweep

Scheduled job (Cloud Scheduler / cron) that expires every open match older
than the retention window, plus open matches whose photo or case was
deleted, then publishes the resulting ``match.resolved`` events.

Usage examples
--------------
  # Run the sweep with the configured retention window
  python scripts/expire_matches.py

  # Report what the cutoff would be without touching any rows
  python scripts/expire_matches.py --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from datetime import datetime, timedelta, timezone

# Ensure the project root is importable
sys.path.insert(0, ".")

from foundmatch.database import async_session_factory
from foundmatch.services.event_publisher import (
    EventPublisher,
    close_redis,
    connect_redis,
    discard_events,
)
from foundmatch.services.lifecycle_service import MatchLifecycle


async def run_sweep(args: argparse.Namespace) -> None:
    lifecycle = MatchLifecycle(retention_days=args.retention_days)
    now = datetime.now(timezone.utc)

    if args.dry_run:
        cutoff = now - timedelta(days=lifecycle.retention_days)
        print(f"  Dry run: open matches created before {cutoff.isoformat()} would expire.")
        return

    await connect_redis()
    publisher = EventPublisher()
    try:
        async with async_session_factory() as session:
            try:
                stale, cutoff = await lifecycle.expire_stale(session, now=now)
                orphaned = await lifecycle.expire_orphaned(session, now=now)
                await session.commit()
            except Exception:
                discard_events(session)
                await session.rollback()
                raise
            published = await publisher.flush(session)
    finally:
        await close_redis()

    print(f"\n{'=' * 60}")
    print("  Match Expiry Sweep")
    print(f"{'=' * 60}")
    print(f"  Cutoff:            {cutoff.isoformat()}")
    print(f"  Expired (stale):   {stale}")
    print(f"  Expired (orphan):  {orphaned}")
    print(f"  Events published:  {published}")
    print(f"{'=' * 60}\n")


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Expire stale and orphaned open matches.",
    )
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Override MATCH_RETENTION_DAYS for this run.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        default=False,
        help="Only print the cutoff.",
    )
    args = parser.parse_args()
    asyncio.run(run_sweep(args))


if __name__ == "__main__":
    main()
