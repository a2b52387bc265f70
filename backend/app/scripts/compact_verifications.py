"""
Compact Verification Log Script
===============================
Expires abandoned pending verifications and trims old completed / failed
records per vehicle, keeping the newest ones for cache fallbacks.

Run with: python -m app.scripts.compact_verifications [--dry-run]

Safe to schedule (cron / ECS scheduled task); it never touches the newest
completed record of any vehicle.
"""

import argparse
import asyncio

from app.core.config import settings
from app.core.database import session_scope
from app.core.logging_config import logger
from app.models.verification import RECORD_MODELS
from app.services.verification_retention import VerificationRetentionJob, RetentionReport


async def compact_verifications(
    dry_run: bool = False,
    keep_completed: int = None,
    keep_failed: int = None,
    pending_expiry_minutes: int = None,
    services=None,
) -> RetentionReport:
    async with session_scope() as db:
        job = VerificationRetentionJob(
            db,
            keep_completed=keep_completed,
            keep_failed=keep_failed,
            pending_expiry_minutes=pending_expiry_minutes,
            dry_run=dry_run,
        )
        try:
            return await job.run(services)
        except Exception as e:
            logger.error(f"Verification compaction failed: {e}")
            print(f"\n❌ Compaction failed: {e}")
            raise


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="FleetVerify verification log retention")
    parser.add_argument("--dry-run", action="store_true", help="Report what would change without writing")
    parser.add_argument("--keep-completed", type=int, default=None,
                        help=f"Completed records kept per vehicle (default {settings.RETENTION_KEEP_COMPLETED})")
    parser.add_argument("--keep-failed", type=int, default=None,
                        help=f"Failed records kept per vehicle (default {settings.RETENTION_KEEP_FAILED})")
    parser.add_argument("--pending-expiry-minutes", type=int, default=None,
                        help=f"Age after which pending records fail (default {settings.PENDING_EXPIRY_MINUTES})")
    parser.add_argument("--service", action="append", choices=sorted(RECORD_MODELS.keys()),
                        help="Limit to one service (repeatable)")
    return parser


async def main(argv=None):
    """Main entry point"""
    args = create_parser().parse_args(argv)

    print("\n" + "=" * 60)
    print("COMPACT VERIFICATION LOG" + (" (DRY RUN)" if args.dry_run else ""))
    print("=" * 60)

    report = await compact_verifications(
        dry_run=args.dry_run,
        keep_completed=args.keep_completed,
        keep_failed=args.keep_failed,
        pending_expiry_minutes=args.pending_expiry_minutes,
        services=args.service,
    )

    for service, counts in report.per_service.items():
        print(f"   - {service}: {counts['expired_pending']} pending expired, "
              f"{counts['deleted_completed']} completed / {counts['deleted_failed']} failed removed")
    print(f"\n✅ Done: {report.expired_pending} expired, {report.total_deleted} removed")


if __name__ == "__main__":
    asyncio.run(main())
