#!/usr/bin/env python3
from __future__ import annotations

import argparse

from dateutil import parser as date_parser

from dine_tokyo import repositories
from dine_tokyo.db import transaction
from dine_tokyo.member_stage import STAGE_ORDER
from dine_tokyo.messages import AREA_LABELS, JST, format_event_datetime


def main() -> int:
    parser = argparse.ArgumentParser(description="Create a dinner event (needs DATABASE_URL).")
    parser.add_argument("--date", required=True, help="Event start, e.g. '2026-11-07 19:00' (JST when no offset).")
    parser.add_argument("--area", required=True, choices=sorted(AREA_LABELS), help="Event area.")
    parser.add_argument("--required-stage", default="bronze", choices=STAGE_ORDER, help="Minimum member stage.")
    parser.add_argument("--yes", action="store_true", help="Actually insert (without this: dry-run).")
    args = parser.parse_args()

    event_date = date_parser.parse(args.date)
    if event_date.tzinfo is None:
        event_date = event_date.replace(tzinfo=JST)

    print(f"Event: {format_event_datetime(event_date)} / {AREA_LABELS[args.area]} / {args.required_stage}+")
    if not args.yes:
        print("Dry-run: add --yes to actually create.")
        return 0

    with transaction() as cursor:
        created = repositories.create_event(cursor, event_date, args.area, args.required_stage)
    print(f"Created event: {created['id']}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
