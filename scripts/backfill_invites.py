#!/usr/bin/env python3
"""Run one calendar invite backfill pass.

Retries invite creation for scheduled/confirmed future meetings that still
have no calendar link, skipping meetings that reached INVITE_MAX_ATTEMPTS.
Uses the same DATABASE_URL, roster, and service account settings as the API.

Usage:
    python scripts/backfill_invites.py [--limit 100]

Exit code 0 if every processed meeting got an invite, 1 if any failed,
2 if the calendar is not configured.
"""

import argparse
import asyncio
import sys

import structlog

from src.outreach.api.middleware.logging import configure_structlog
from src.outreach.config import get_settings
from src.outreach.core.database import close_db, get_engine, make_session_factory
from src.outreach.main import build_collaborators
from src.outreach.scheduling.invites import InviteDispatcher
from src.outreach.scheduling.meeting_store import MeetingStore

logger = structlog.get_logger("backfill_invites")


async def run(limit: int | None) -> int:
    settings = get_settings()
    calendar, _ = build_collaborators(settings)
    if calendar is None:
        logger.error("backfill_aborted", reason="calendar not configured")
        return 2

    store = MeetingStore(make_session_factory(get_engine()))
    dispatcher = InviteDispatcher(store, calendar=calendar, settings=settings)
    try:
        results = await dispatcher.backfill_pending_invites(limit=limit)
    finally:
        await close_db()

    print(
        f"processed={results['processed']} "
        f"attached={results['attached']} failed={results['failed']}"
    )
    return 1 if results["failed"] else 0


def main() -> None:
    parser = argparse.ArgumentParser(description="Retry missing calendar invites")
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum meetings to process (defaults to INVITE_BACKFILL_BATCH_SIZE)",
    )
    args = parser.parse_args()

    configure_structlog()
    sys.exit(asyncio.run(run(args.limit)))


if __name__ == "__main__":
    main()
