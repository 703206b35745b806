#!/usr/bin/env python3
"""Re-push tags to Kit.com for survey responses whose sync failed.

Run from the backend directory:
    python -m scripts.retry_kit_sync --limit 50
"""

from __future__ import annotations

import argparse
import logging
from datetime import datetime, timezone
from typing import Dict

from config import Settings
from db import SYNC_FAILED, SYNC_SUCCESS, Database
from kit_client import SYNC_SKIPPED, KitClient
from logging_setup import configure_logging, mask_email
from response_store import ResponseStore

logger = logging.getLogger(__name__)


def retry_failed(responses: ResponseStore, kit: KitClient, limit: int = 50) -> Dict[str, int]:
    """One pass over failed responses. Returns counts per outcome."""
    counts = {SYNC_SUCCESS: 0, SYNC_FAILED: 0, SYNC_SKIPPED: 0}
    if not kit.is_enabled():
        logger.warning("KIT_API_KEY not configured, nothing to retry")
        return counts

    for record in responses.failed_syncs(limit):
        response_id = record["response_id"]
        email = record["email"]
        outcome = kit.sync(email, record["selected_tags"])
        responses.mark_retry(response_id)
        counts[outcome.status] += 1

        if outcome.status == SYNC_SKIPPED:
            continue
        responses.patch_sync_status(response_id, email, outcome.status, datetime.now(timezone.utc))
        if outcome.error is not None:
            responses.record_sync_failure(response_id, email, outcome.error)
        logger.info("Retry for %s (%s): %s", response_id, mask_email(email), outcome.status)

    return counts


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--limit", type=int, default=50, help="max responses to retry in one pass")
    args = parser.parse_args(argv)

    settings = Settings.load()
    configure_logging(settings.log_level)
    db = Database.from_settings(settings)
    try:
        counts = retry_failed(ResponseStore(db), KitClient(settings), limit=args.limit)
    finally:
        db.dispose()
    logger.info(
        "Retry pass done: %d synced, %d failed, %d skipped",
        counts[SYNC_SUCCESS],
        counts[SYNC_FAILED],
        counts[SYNC_SKIPPED],
    )


if __name__ == "__main__":
    main()
