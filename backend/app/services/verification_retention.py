"""
Verification Retention Job
==========================
Bounds the append-only verification log. Per (user, vehicle) key and service:

- pending records older than PENDING_EXPIRY_MINUTES are failed (abandoned calls)
- only the newest RETENTION_KEEP_COMPLETED completed records are kept
- only the newest RETENTION_KEEP_FAILED failed records are kept

At least one completed record is always kept so stale fallbacks survive.
Runs from app.scripts.compact_verifications, never inside a request.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import Dict, Iterable, Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.logging_config import logger
from app.core.types import utcnow
from app.models.verification import RECORD_MODELS, VerificationStatus


@dataclass
class RetentionReport:
    expired_pending: int = 0
    deleted_completed: int = 0
    deleted_failed: int = 0
    per_service: Dict[str, Dict[str, int]] = field(default_factory=dict)

    @property
    def total_deleted(self) -> int:
        return self.deleted_completed + self.deleted_failed


class VerificationRetentionJob:
    def __init__(
        self,
        db: AsyncSession,
        keep_completed: Optional[int] = None,
        keep_failed: Optional[int] = None,
        pending_expiry_minutes: Optional[int] = None,
        dry_run: bool = False,
    ):
        self.db = db
        self.keep_completed = max(1, keep_completed if keep_completed is not None else settings.RETENTION_KEEP_COMPLETED)
        self.keep_failed = max(0, keep_failed if keep_failed is not None else settings.RETENTION_KEEP_FAILED)
        self.pending_expiry = timedelta(
            minutes=pending_expiry_minutes if pending_expiry_minutes is not None else settings.PENDING_EXPIRY_MINUTES
        )
        self.dry_run = dry_run

    async def expire_stale_pending(self, service: str) -> int:
        model = RECORD_MODELS[service]
        now = utcnow()
        cutoff = now - self.pending_expiry
        condition = (model.status == VerificationStatus.PENDING) & (model.created_at < cutoff)

        if self.dry_run:
            result = await self.db.execute(select(func.count()).select_from(model).where(condition))
            return result.scalar_one()

        minutes = int(self.pending_expiry.total_seconds() // 60)
        result = await self.db.execute(
            update(model)
            .where(condition)
            .values(
                status=VerificationStatus.FAILED,
                error_message=f"Expired: no upstream result within {minutes} minutes",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount or 0

    async def compact(self, service: str, status: VerificationStatus, keep: int) -> int:
        """Delete all but the newest `keep` records with `status` for every key"""
        model = RECORD_MODELS[service]

        keys_result = await self.db.execute(
            select(model.user_id, model.vehicle_number)
            .where(model.status == status)
            .group_by(model.user_id, model.vehicle_number)
            .having(func.count(model.id) > keep)
        )

        removed = 0
        for user_id, vehicle_number in keys_result.all():
            ids_result = await self.db.execute(
                select(model.id)
                .where(model.user_id == user_id)
                .where(model.vehicle_number == vehicle_number)
                .where(model.status == status)
                .order_by(model.created_at.desc())
                .offset(keep)
            )
            stale_ids = [row[0] for row in ids_result.all()]
            if not stale_ids:
                continue

            removed += len(stale_ids)
            if not self.dry_run:
                await self.db.execute(
                    delete(model)
                    .where(model.id.in_(stale_ids))
                    .execution_options(synchronize_session=False)
                )
        return removed

    async def run(self, services: Optional[Iterable[str]] = None) -> RetentionReport:
        report = RetentionReport()

        for service in services or RECORD_MODELS.keys():
            expired = await self.expire_stale_pending(service)
            completed = await self.compact(service, VerificationStatus.COMPLETED, self.keep_completed)
            failed = await self.compact(service, VerificationStatus.FAILED, self.keep_failed)

            report.expired_pending += expired
            report.deleted_completed += completed
            report.deleted_failed += failed
            report.per_service[service] = {
                "expired_pending": expired,
                "deleted_completed": completed,
                "deleted_failed": failed,
            }
            logger.info(
                f"Retention {service}: expired {expired} pending, "
                f"removed {completed} completed / {failed} failed"
                + (" (dry run)" if self.dry_run else "")
            )

        if self.dry_run:
            await self.db.rollback()
        else:
            await self.db.commit()

        return report
