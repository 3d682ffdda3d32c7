"""
This is the command-line entry point for HabitLog.

It handles the following responsibilities:
- Configures logging for the process.
- Builds the `HabitStore` from `habitlog.config` (encrypted files under HABITLOG_DATA_DIR).
- Offers a few maintenance and coaching commands: exporting the snapshot, showing an
  admin's dashboard, listing or exporting a client's habits, and turning a voice
  recording into habit updates.
"""
# main.py

import argparse
import json
import logging
import sys
from datetime import datetime, timezone

from habitlog import config
from habitlog.errors import HabitLogError
from habitlog.reports import completion_percentage, export_habits_csv
from habitlog.store import HabitStore
from habitlog.voice import process_recording

logger = logging.getLogger("habitlog")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="habitlog", description="HabitLog record store tools")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("export", help="Print a JSON backup of all records")

    dashboard = sub.add_parser("dashboard", help="Show an admin's dashboard")
    dashboard.add_argument("admin_id")

    habits = sub.add_parser("habits", help="List a user's habits")
    habits.add_argument("user_id")
    habits.add_argument("--page", type=int, default=1)
    habits.add_argument("--limit", type=int, default=10)
    habits.add_argument("--csv", action="store_true", help="Print all habits as CSV")

    voice = sub.add_parser("voice", help="Turn a voice recording into habit updates")
    voice.add_argument("user_id")
    voice.add_argument("audio", help="Path to the recorded audio file")
    voice.add_argument("--date", default=None, help="Day to update (YYYY-MM-DD), defaults to today")
    voice.add_argument("--as", dest="actor", default=None, help="Acting user, defaults to USER_ID")
    voice.add_argument("--apply", action="store_true", help="Apply every proposed update")
    return parser


def _print_json(value) -> None:
    print(json.dumps(value, indent=2))


def run_voice(store: HabitStore, args) -> int:
    with open(args.audio, "rb") as f:
        audio = f.read()
    actor = args.actor or args.user_id
    day = args.date or datetime.now(timezone.utc).date().isoformat()
    review = process_recording(audio, store, args.user_id, day, requested_by=actor)
    print(f"Transcript: {review.transcript}")
    if not review.updates:
        print("No habit updates found.")
        return 0
    for index, update in enumerate(review.updates):
        print(f"[{index}] {update.display_name}: {update.value!r} ({update.confidence} confidence)")
    if not args.apply:
        print("Run again with --apply to save these updates.")
        return 0
    result = review.apply(store, actor)
    _print_json(result.to_dict())
    return 0 if result.success else 1


def main(argv=None) -> int:
    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL, logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    args = build_parser().parse_args(argv)
    store = HabitStore.from_config()

    try:
        if args.command == "export":
            print(store.export_data())
        elif args.command == "dashboard":
            _print_json(store.get_admin_dashboard_data(args.admin_id))
        elif args.command == "habits":
            if args.csv:
                print(export_habits_csv(store, args.user_id), end="")
            else:
                page = store.get_daily_habits(args.user_id, page=args.page, limit=args.limit)
                for habit in page.data:
                    print(f"{habit['date']}  {completion_percentage(habit):3d}% complete")
                print(f"Page {page.page} of {page.total} entries; more: {page.has_more}")
        elif args.command == "voice":
            return run_voice(store, args)
    except HabitLogError as e:
        logger.error("%s: %s", e.kind, e.message)
        return 1
    except OSError as e:
        # Unreadable input files, such as a missing recording.
        logger.error("Could not read input: %s", e)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
