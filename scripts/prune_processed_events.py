"""
Delete processed-event entries older than the retention window.

Stripe stops redelivering an event after three days, so older entries can no
longer prevent a duplicate. Meant to run from cron.

Usage:
    python scripts/prune_processed_events.py
    python scripts/prune_processed_events.py --retention-hours 96
"""
import argparse
import sys
sys.path.insert(0, ".")

from billing_sync.core.config import settings
from billing_sync.core.errors import StorageError
from billing_sync.db import engine
from billing_sync.services.event_log import ProcessedEventStore


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Prune the processed webhook event log")
    parser.add_argument(
        "--retention-hours",
        type=int,
        default=settings.PROCESSED_EVENT_RETENTION_HOURS,
        help="Keep entries newer than this (default: PROCESSED_EVENT_RETENTION_HOURS)",
    )
    args = parser.parse_args(argv)

    store = ProcessedEventStore(engine, retention_hours=args.retention_hours)
    try:
        deleted = store.prune()
    except StorageError as e:
        print(f"Prune failed: {e}")
        return 1

    print(f"Deleted {deleted} processed event(s) older than {args.retention_hours}h")
    return 0


if __name__ == "__main__":
    sys.exit(main())
