#!/usr/bin/env python3
"""
Run one expiry sweep against the configured database and print the report.

Cancels OPEN/OFFERS_COLLECTING requests older than the request TTL (their live
offers are rejected) and expires OFFERED offers untouched for the offer TTL.
Notifications go to the outbox like the in-process worker does.

Usage:
  cd backend
  export DATABASE_URL="postgresql://..."
  PYTHONPATH=. python scripts/run_expiry_sweep.py
  PYTHONPATH=. python scripts/run_expiry_sweep.py --request-ttl-days 7 --offer-ttl-days 0
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys

# Run from repo root or backend; ensure backend is on path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from marketplace.core.dependencies import SessionLocal
from marketplace.services.expiry_sweeper import run_expiry_sweep
from marketplace.services.notifications import OutboxNotificationPort


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the service request expiry sweep once.")
    parser.add_argument("--request-ttl-days", type=int, default=None, help="Override REQUEST_TTL_DAYS.")
    parser.add_argument("--offer-ttl-days", type=int, default=None, help="Override OFFER_TTL_DAYS (0 skips offers).")
    parser.add_argument("--batch-size", type=int, default=None, help="Rows per step (default EXPIRY_SWEEP_BATCH_SIZE).")
    parser.add_argument("--no-notify", action="store_true", help="Do not enqueue notifications.")
    args = parser.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    if SessionLocal is None:
        print("Error: DATABASE_URL is not set.", file=sys.stderr)
        sys.exit(1)

    notifier = None if args.no_notify else OutboxNotificationPort(SessionLocal)
    report = run_expiry_sweep(
        SessionLocal,
        notifier=notifier,
        request_ttl_days=args.request_ttl_days,
        offer_ttl_days=args.offer_ttl_days,
        batch_size=args.batch_size,
    )
    print(json.dumps(report.as_dict(), sort_keys=True))
    if report.failed_ids:
        print("Failed: " + ", ".join(report.failed_ids), file=sys.stderr)
        sys.exit(2)


if __name__ == "__main__":
    main()
