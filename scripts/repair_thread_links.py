#!/usr/bin/env python3
"""Recompute thread authorities and re-link replies attached to the wrong shipment.

Every correction is written to link_corrections and logged as a warning.

Dry run (default):
    python scripts/repair_thread_links.py

Apply:
    python scripts/repair_thread_links.py --apply
"""

import argparse
import json

from loguru import logger

from freightintel.database import SessionLocal
from freightintel.logging_config import setup_logging
from freightintel.services.thread_authority import resolve_all


def main():
    parser = argparse.ArgumentParser(description="Repair cross-linked thread replies")
    parser.add_argument("--apply", action="store_true", help="Commit the repairs")
    parser.add_argument("--no-repair", action="store_true", help="Only recompute thread authorities")
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    args = parser.parse_args()

    setup_logging()
    db = SessionLocal()
    try:
        summary = resolve_all(db, repair=not args.no_repair, commit=False)
        if args.apply:
            db.commit()
        else:
            logger.info("Dry run, rolling back {} corrections", summary["corrected"])
            db.rollback()
    finally:
        db.close()

    if args.json:
        print(json.dumps(summary, indent=2))
    else:
        print(
            f"{'APPLY' if args.apply else 'DRY RUN'}: {summary['threads']} threads, "
            f"{summary['resolved']} with authority, {summary['corrected']} links corrected"
        )


if __name__ == "__main__":
    main()
