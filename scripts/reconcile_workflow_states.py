#!/usr/bin/env python3
"""Nightly workflow reconciliation: recompute every shipment's state from its documents.

Dry run (default) reports what would change and rolls back:
    python scripts/reconcile_workflow_states.py

Apply:
    python scripts/reconcile_workflow_states.py --apply

With --rebuild, field provenance is replayed too (full history rebuild).
"""

import argparse
import json
from datetime import datetime, timezone

from loguru import logger
from sqlalchemy import select

from freightintel.database import SessionLocal
from freightintel.logging_config import setup_logging
from freightintel.models import Shipment
from freightintel.services.reconciliation import rebuild_shipment
from freightintel.services.workflow import reconcile_all
from freightintel.utils.locks import shipment_lock


def rebuild_all(db) -> dict:
    checked = changed = 0
    for shipment in db.scalars(select(Shipment).order_by(Shipment.id)).all():
        checked += 1
        with shipment_lock(db, shipment.id):
            outcome = rebuild_shipment(db, shipment)
        if outcome["changed_fields"] or outcome["state"]:
            changed += 1
    return {"checked": checked, "updated": changed}


def main():
    parser = argparse.ArgumentParser(description="Reconcile shipment workflow states")
    parser.add_argument("--apply", action="store_true", help="Commit the changes")
    parser.add_argument("--rebuild", action="store_true", help="Also replay field provenance")
    parser.add_argument("--json", action="store_true", help="Print the summary as JSON")
    args = parser.parse_args()

    setup_logging()
    mode = "APPLY" if args.apply else "DRY RUN"
    logger.info("Workflow reconciliation ({}) — {}", mode, datetime.now(timezone.utc).isoformat())

    db = SessionLocal()
    try:
        summary = rebuild_all(db) if args.rebuild else reconcile_all(db, commit=False)
        if args.apply:
            db.commit()
        else:
            db.rollback()
    finally:
        db.close()

    summary["mode"] = mode
    if args.json:
        print(json.dumps(summary, indent=2))
    else:
        print(f"{mode}: {summary['checked']} shipments checked, {summary['updated']} updated")


if __name__ == "__main__":
    main()
