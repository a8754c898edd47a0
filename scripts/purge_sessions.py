#!/usr/bin/env python3
from __future__ import annotations

import argparse
from datetime import datetime, timedelta, timezone

from dine_tokyo import repositories
from dine_tokyo.db import transaction


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Delete expired login sessions and finish abandoned icebreaker sessions."
    )
    parser.add_argument("--stale-hours", type=int, default=12,
                        help="Finish icebreaker sessions idle for this many hours (default: 12).")
    parser.add_argument("--yes", action="store_true", help="Actually purge (without this: dry-run).")
    args = parser.parse_args()

    older_than = datetime.now(timezone.utc) - timedelta(hours=args.stale_hours)

    with transaction() as cursor:
        expired = repositories.count_expired_auth_sessions(cursor)
        stale = repositories.finish_stale_ice_sessions(cursor, older_than, dry_run=True)
        print(f"Expired auth sessions: {expired}")
        print(f"Icebreaker sessions idle since {older_than:%Y-%m-%d %H:%M} UTC: {stale}")

        if not args.yes:
            print("Dry-run: add --yes to actually purge.")
            return 0

        if not expired and not stale:
            print("Nothing to purge.")
            return 0

        deleted = repositories.purge_expired_auth_sessions(cursor)
        finished = repositories.finish_stale_ice_sessions(cursor, older_than, dry_run=False)
    print(f"Deleted auth sessions: {deleted}")
    print(f"Finished icebreaker sessions: {finished}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
