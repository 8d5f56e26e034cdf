"""
Run one recurrence generation batch outside the API process (cron, ops).

Usage:
    python scripts/run_recurrence_generation.py [--horizon-days 28] [--budget-seconds 300] [--now 2025-03-01T00:00:00Z]
"""
import sys
import os
import argparse
from datetime import datetime

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from cobook.db import Base, engine, SessionLocal
from cobook.config import settings
from cobook.logging import setup_logging
from cobook.services.recurrence import run_recurrence_generation
from cobook.services.time_rules import ensure_utc


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Materialize upcoming recurring bookings")
    parser.add_argument("--horizon-days", type=int, default=None, help="Days ahead to generate (default from settings)")
    parser.add_argument("--budget-seconds", type=float, default=None, help="Wall-clock budget for the batch")
    parser.add_argument("--now", type=str, default=None, help="Override the current instant (ISO 8601)")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    setup_logging()
    if settings.auto_create_db:
        Base.metadata.create_all(bind=engine)

    now = None
    if args.now:
        now = ensure_utc(datetime.fromisoformat(args.now.replace("Z", "+00:00")))

    summary = run_recurrence_generation(
        SessionLocal,
        now_utc=now,
        horizon_days=args.horizon_days,
        budget_seconds=args.budget_seconds,
    )
    print(
        f"[recurrence] rules={summary.rules_processed} created={summary.bookings_created} "
        f"gaps={summary.gaps_skipped} failed={summary.rules_failed} deferred={summary.rules_deferred}"
    )
    return 1 if summary.rules_failed else 0


if __name__ == "__main__":
    sys.exit(main())
