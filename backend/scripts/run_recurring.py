"""Apply every due recurring transaction once; meant for system cron."""
from __future__ import annotations

import argparse
import sys
from datetime import date

from budget_tracker.errors import LedgerError
from budget_tracker.logging_setup import configure_logging
from budget_tracker.persistence import get_persistence
from budget_tracker.services.recurring import run_due_recurrences


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--as-of", type=date.fromisoformat, default=None, help="run as if today were YYYY-MM-DD")
    args = parser.parse_args(argv)

    configure_logging()
    try:
        stats = run_due_recurrences(get_persistence(), today=args.as_of)
    except LedgerError as exc:
        print(f"Run failed: {exc.message}", file=sys.stderr)
        return 1
    print(f"Processed: {stats.processed_count} (skipped {stats.skipped}, failed {stats.failed})")
    return 0


if __name__ == "__main__":
    sys.exit(main())
