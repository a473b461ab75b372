#!/usr/bin/env python3
"""
Purge finished pipeline runs older than a cutoff from the database.

Use when:
- The run history has grown large and old runs are no longer inspected.
- You want to reset the run list of a test installation.

Only terminal runs (SUCCEEDED, FAILED, ROLLED_BACK) are removed. Environment
pointers and the desired-state change history are never touched.

Run from project root:
  python scripts/purge_runs.py            # older than 30 days
  python scripts/purge_runs.py --days 7

Requires: PostgreSQL running and DB env vars (DB_HOST, DB_NAME, etc.) or .env.
"""

import argparse
from datetime import timedelta
from pathlib import Path

from dotenv import load_dotenv

PROJECT_ROOT = Path(__file__).resolve().parent.parent
load_dotenv(PROJECT_ROOT / ".env")

from tollgate.core.store import create_store
from tollgate.domain.models import utcnow


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Purge finished pipeline runs.")
    parser.add_argument("--days", type=int, default=30, help="Keep runs finished within this many days")
    args = parser.parse_args(argv)

    store = create_store()
    n = store.purge_runs(utcnow() - timedelta(days=args.days))
    print(f"Purged {n} runs finished more than {args.days} days ago.")
    return n


if __name__ == "__main__":
    main()
