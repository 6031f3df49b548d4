#!/usr/bin/env python3
"""
Queue a Stripe historical backfill for one website.

Usage:
    python scripts/sync_stripe_historical_data.py <website_id> [--process]

Enqueues one sync job per month over the historical window
(HISTORICAL_SYNC_DAYS). With --process the queue is drained right here
instead of waiting for the next /jobs/process call.
"""
import sys
import os
import uuid

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app.db.session import SessionLocal
from app.models.sync_job import SyncJobProvider
from app.services.job_processor import JobProcessor
from app.services.scheduler import register_payment_provider_sync


def sync_historical_data(website_id: uuid.UUID, process: bool = False):
    db = SessionLocal()
    try:
        jobs = register_payment_provider_sync(db, website_id, SyncJobProvider.STRIPE, force_initial_sync=True)
        print(f"Queued {len(jobs)} historical sync jobs for website {website_id}")
    finally:
        db.close()

    if not process:
        return

    processor = JobProcessor()
    totals = {"completed": 0, "retrying": 0, "failed": 0}
    while True:
        batch = processor.process_batch()
        if not batch.processed:
            break
        for outcome in batch.jobs:
            totals[outcome.status] = totals.get(outcome.status, 0) + 1
            if outcome.result:
                print(f"  {outcome.job_id}: {outcome.result.synced} synced, "
                      f"{outcome.result.skipped} skipped, {outcome.result.errors} errors")
            else:
                print(f"  {outcome.job_id}: {outcome.status} ({outcome.error})")
    print(f"Done: {totals['completed']} completed, {totals['retrying']} retried, {totals['failed']} failed")


if __name__ == "__main__":
    args = [arg for arg in sys.argv[1:] if not arg.startswith("--")]
    if len(args) != 1:
        print(__doc__)
        sys.exit(1)
    try:
        target = uuid.UUID(args[0])
    except ValueError:
        print(f"Invalid website id: {args[0]}")
        sys.exit(1)
    sync_historical_data(target, process="--process" in sys.argv)
