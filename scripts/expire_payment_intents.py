#!/usr/bin/env python3
"""
Expire stale pending payment intents.

Pending intents older than the TTL (PAYMENT_INTENT_TTL_HOURS, default 24) are
moved to 'expired'. Expired intents never credit the wallet, so a late
provider notification for one is reported as a settlement conflict.

Usage:
    # Expire with the configured TTL (for cron)
    python3 scripts/expire_payment_intents.py

    # Custom age threshold
    python3 scripts/expire_payment_intents.py --older-than-hours 48

    # Dry run (count only)
    python3 scripts/expire_payment_intents.py --dry-run
"""

import argparse
import asyncio
import sys
from datetime import timedelta

from metering.db.session import close_engines, get_write_session_factory
from metering.exceptions import StorageFailureError
from metering.observability import get_logger, setup_logging
from metering.services.payment_intents import PaymentIntentService

logger = get_logger(__name__)


async def run(older_than: timedelta | None, dry_run: bool) -> int:
    """Run one sweep and return the number of intents expired (or eligible)."""
    factory = get_write_session_factory()
    try:
        async with factory() as session:
            service = PaymentIntentService(session)
            if dry_run:
                count = await service.count_stale(older_than)
                logger.info("payment_intent_expiry_dry_run", eligible_count=count)
                return count
            return await service.expire_stale(older_than)
    finally:
        await close_engines()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Expire stale pending payment intents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Expire with the configured TTL (for cron jobs)
  python3 scripts/expire_payment_intents.py

  # Only intents older than two days
  python3 scripts/expire_payment_intents.py --older-than-hours 48
        """,
    )
    parser.add_argument(
        "--older-than-hours",
        type=int,
        help="Age threshold in hours (default: PAYMENT_INTENT_TTL_HOURS)",
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Only count intents that would expire"
    )

    args = parser.parse_args()

    if args.older_than_hours is not None and args.older_than_hours <= 0:
        parser.error("--older-than-hours must be positive")

    setup_logging()
    older_than = timedelta(hours=args.older_than_hours) if args.older_than_hours else None

    try:
        count = asyncio.run(run(older_than, args.dry_run))
    except StorageFailureError as exc:
        logger.error("payment_intent_expiry_aborted", error=str(exc))
        sys.exit(1)

    print(f"{'Eligible' if args.dry_run else 'Expired'}: {count}")


if __name__ == "__main__":
    main()
