import argparse
import json
import os
from pathlib import Path
from typing import Optional

from wellcoach.core.clock import utc_now
from wellcoach.core.logging import configure_logging
from wellcoach.core.nudges import nudge_inactive_clients
from wellcoach.core.scheduled_events import process_scheduled_events
from wellcoach.db import session as db_session


def resolve_db_path(override: Optional[str]) -> Path:
    if override:
        return Path(override).expanduser().resolve()
    return Path(os.getenv("DB_PATH", db_session.DB_PATH)).expanduser().resolve()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Run the wellcoach scheduled jobs once (for cron)."
    )
    parser.add_argument(
        "job",
        choices=["scheduled-events", "client-nudges"],
        help="Job to run.",
    )
    parser.add_argument(
        "--db-path",
        default=None,
        help="Override SQLite DB path. Defaults to DB_PATH env or app default.",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Report what would change without writing or notifying.",
    )
    args = parser.parse_args(argv)

    db_path = resolve_db_path(args.db_path)
    if not db_path.exists():
        print(f"DB not found: {db_path}")
        return 1

    configure_logging()
    db_session.configure_database(str(db_path))
    db = db_session.SessionLocal()
    try:
        if args.job == "scheduled-events":
            result = process_scheduled_events(db, now=utc_now(), dry_run=args.dry_run).as_dict()
        else:
            report = nudge_inactive_clients(db, now=utc_now(), dry_run=args.dry_run)
            result = {"total_nudged": report.total_nudged, "dry_run": report.dry_run}
    finally:
        db.close()
    print(json.dumps(result, sort_keys=True))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
