#!/usr/bin/env python3
"""Report ledger database health, optionally migrating or expiring stale import previews."""
import argparse
import json
import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
if str(REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(REPO_ROOT))

from finance_tracker.db import connect_db, parse_database_config
from finance_tracker.db_migrations import apply_migrations, get_db_health
from finance_tracker.ledger_store import LedgerStore


def main():
    parser = argparse.ArgumentParser(description="Check the finance tracker database")
    parser.add_argument(
        "db_path",
        nargs="?",
        default="instance/finance_tracker.sqlite",
        help="SQLite file to inspect (DATABASE_URL wins when it points to Postgres)",
    )
    parser.add_argument("--migrate", action="store_true", help="Apply pending migrations first")
    parser.add_argument(
        "--expire-staging",
        type=int,
        metavar="HOURS",
        help="Delete import previews older than HOURS",
    )
    args = parser.parse_args()

    config = parse_database_config(args.db_path)
    if args.migrate:
        apply_migrations(config)

    health = get_db_health(config)
    if args.expire_staging is not None and health["ok"]:
        conn = connect_db(config)
        try:
            LedgerStore(conn).cleanup_expired_import_staging(max_age_hours=args.expire_staging)
        finally:
            conn.close()

    print(json.dumps(health, indent=2, sort_keys=True))
    return 0 if health["ok"] else 1


if __name__ == "__main__":
    sys.exit(main())
