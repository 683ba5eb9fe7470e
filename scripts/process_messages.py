#!/usr/bin/env python3
"""Run a JSON-lines file of messages through the pipeline.

Each line is one message: message_id, thread_id, subject, sender, received_at,
attachment_names, body_text, attachment_text (already extracted by the caller).

    python scripts/process_messages.py messages.jsonl
    python scripts/process_messages.py messages.jsonl --reprocess
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from loguru import logger
from pydantic import ValidationError

from freightintel.database import SessionLocal
from freightintel.http_client import close_clients
from freightintel.logging_config import setup_logging
from freightintel.schemas.messages import InboundMessage
from freightintel.services.pipeline import process_batch


def load_messages(path: Path) -> list[InboundMessage]:
    messages = []
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
        if not line.strip():
            continue
        try:
            messages.append(InboundMessage.model_validate_json(line))
        except ValidationError as e:
            logger.warning("Skipping line {}: {}", lineno, e.error_count())
    return messages


async def run(path: Path, reprocess: bool) -> int:
    messages = load_messages(path)
    db = SessionLocal()
    try:
        result = await process_batch(db, messages, reprocess=reprocess)
    finally:
        db.close()
        await close_clients()
    for failure in result.failures:
        print(f"  FAILED {failure['message_id']}: {failure['error_type']}: {failure['error']}")
    print(f"{result.processed} messages, {result.failed} failed")
    return 1 if result.failed else 0


def main():
    parser = argparse.ArgumentParser(description="Process messages through the reconciliation engine")
    parser.add_argument("path", type=Path, help="JSON-lines file of messages")
    parser.add_argument("--reprocess", action="store_true", help="Re-run messages already stored")
    args = parser.parse_args()

    setup_logging()
    sys.exit(asyncio.run(run(args.path, args.reprocess)))


if __name__ == "__main__":
    main()
