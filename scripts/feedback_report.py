#!/usr/bin/env python3
"""
FoundMatch — Feedback Report: Statistics and Training Export CLI

Management script for the scoring recalibration programme.  Provides three
subcommands:

  stats   — Report verdict counts, rejection reasons and mean signal scores.
  export  — Mark pending feedback as a training batch and write it as JSONL.
  mark    — Set an exported batch to ``trained`` or ``invalid``.

Usage examples
--------------
  # Show feedback stats
  python scripts/feedback_report.py stats

  # Export up to 500 pending rows to a file
  python scripts/feedback_report.py export --limit 500 --out batch.jsonl

  # Record that a batch was consumed by a training run
  python scripts/feedback_report.py mark batch-1a2b3c4d5e6f trained
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Ensure the project root is importable
sys.path.insert(0, ".")

from foundmatch.database import async_session_factory
from foundmatch.services.feedback_service import FeedbackService
from foundmatch.services.scoring_service import SIGNALS


# ──────────────────────────────────────────────────────────────────────────────
# Subcommand: stats
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_stats(args: argparse.Namespace) -> None:
    """Report verdict counts, reasons and per-signal means."""
    service = FeedbackService()

    async with async_session_factory() as session:
        stats = await service.get_feedback_stats(db_session=session)

    print(f"\n{'=' * 60}")
    print("  Match Feedback Statistics")
    print(f"{'=' * 60}")
    print(f"  Total feedback:    {stats['total']}")
    for verdict, count in sorted(stats["by_verdict"].items()):
        print(f"    {verdict:<12} {count}")

    if stats["by_reason"]:
        print("\n  Rejection reasons:")
        for reason, count in sorted(
            stats["by_reason"].items(), key=lambda item: (-item[1], item[0])
        ):
            print(f"    {reason:<22} {count}")

    print("\n  Training status:")
    for status, count in sorted(stats["by_training_status"].items()):
        print(f"    {status:<12} {count}")

    print("\n  Mean scores by verdict:")
    header = "".join(f"{name:>9}" for name in ("overall", *SIGNALS))
    print(f"    {'':<12}{header}")
    for verdict, means in stats["mean_scores"].items():
        cells = "".join(
            f"{'-' if means[name] is None else format(means[name], '.1f'):>9}"
            for name in ("overall", *SIGNALS)
        )
        print(f"    {verdict:<12}{cells}")

    print(f"{'=' * 60}\n")

    if args.json:
        print(json.dumps(stats, indent=2, default=str))


# ──────────────────────────────────────────────────────────────────────────────
# Subcommand: export
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_export(args: argparse.Namespace) -> None:
    """Export pending feedback rows as one training batch."""
    service = FeedbackService()

    async with async_session_factory() as session:
        batch_id, records = await service.export_training_batch(
            session, batch_id=args.batch_id, limit=args.limit
        )
        await session.commit()

    lines = [json.dumps(record, sort_keys=True, default=str) for record in records]
    if args.out:
        Path(args.out).write_text("\n".join(lines) + ("\n" if lines else ""))
        print(f"  Wrote {len(records)} records for batch {batch_id} to {args.out}")
    else:
        for line in lines:
            print(line)
        print(f"  Batch {batch_id}: {len(records)} records", file=sys.stderr)


# ──────────────────────────────────────────────────────────────────────────────
# Subcommand: mark
# ──────────────────────────────────────────────────────────────────────────────

async def cmd_mark(args: argparse.Namespace) -> None:
    """Set the training status of an exported batch."""
    service = FeedbackService()

    async with async_session_factory() as session:
        count = await service.mark_batch(args.batch_id, args.status, session)
        await session.commit()

    print(f"  Marked {count} records in batch {args.batch_id} as {args.status}")


# ──────────────────────────────────────────────────────────────────────────────
# CLI entry point
# ──────────────────────────────────────────────────────────────────────────────

def main() -> None:
    parser = argparse.ArgumentParser(
        description="FoundMatch feedback report: statistics and training export.",
    )

    subparsers = parser.add_subparsers(
        dest="command",
        help="Available subcommands",
    )

    # ── stats ─────────────────────────────────────────────────────────
    stats_parser = subparsers.add_parser(
        "stats",
        help="Report verdict counts, reasons and mean signal scores.",
    )
    stats_parser.add_argument(
        "--json",
        action="store_true",
        default=False,
        help="Also output raw JSON data.",
    )

    # ── export ────────────────────────────────────────────────────────
    export_parser = subparsers.add_parser(
        "export",
        help="Export pending feedback as a training batch.",
    )
    export_parser.add_argument(
        "--limit", "-n",
        type=int,
        default=1000,
        help="Maximum number of rows to export (default: 1000).",
    )
    export_parser.add_argument(
        "--batch-id",
        type=str,
        default=None,
        help="Batch identifier (generated when omitted).",
    )
    export_parser.add_argument(
        "--out", "-o",
        type=str,
        default=None,
        help="Write JSONL to this path instead of stdout.",
    )

    # ── mark ──────────────────────────────────────────────────────────
    mark_parser = subparsers.add_parser(
        "mark",
        help="Set an exported batch to trained or invalid.",
    )
    mark_parser.add_argument("batch_id", type=str)
    mark_parser.add_argument("status", choices=["trained", "invalid"])

    args = parser.parse_args()

    if args.command == "stats":
        asyncio.run(cmd_stats(args))
    elif args.command == "export":
        asyncio.run(cmd_export(args))
    elif args.command == "mark":
        asyncio.run(cmd_mark(args))
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
