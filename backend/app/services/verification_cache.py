"""
Verification Cache Store - append-only log of verification attempts
(rc_verifications, fastag_verifications, challan_verifications).

Every lookup keys on (user, vehicle, service) and returns the single most
recent match by created_at. Records move pending -> completed | failed
exactly once and are never edited afterwards.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.exceptions import VerificationRecordNotFoundError, VerificationStateError
from app.core.logging_config import logger
from app.core.types import utcnow
from app.models.verification import RECORD_MODELS, VerificationRecordMixin, VerificationStatus


class VerificationCacheStore:
    """Persistence for verification records, one table per service"""

    def __init__(self, db: AsyncSession):
        self.db = db

    @staticmethod
    def model_for(service: str):
        return RECORD_MODELS[service]

    async def _latest(
        self,
        service: str,
        user_id: str,
        vehicle_number: str,
        status: VerificationStatus,
        since: Optional[datetime] = None,
    ) -> Optional[VerificationRecordMixin]:
        model = self.model_for(service)
        query = (
            select(model)
            .where(model.user_id == user_id)
            .where(model.vehicle_number == vehicle_number)
            .where(model.status == status)
        )
        if since is not None:
            query = query.where(model.created_at >= since)
        query = query.order_by(model.created_at.desc()).limit(1)

        result = await self.db.execute(query)
        return result.scalar_one_or_none()

    async def find_fresh(
        self,
        user_id: str,
        vehicle_number: str,
        service: str,
        window_start: datetime,
    ) -> Optional[VerificationRecordMixin]:
        """Latest completed record created at or after window_start"""
        return await self._latest(service, user_id, vehicle_number, VerificationStatus.COMPLETED, window_start)

    async def find_latest_completed(
        self,
        user_id: str,
        vehicle_number: str,
        service: str,
    ) -> Optional[VerificationRecordMixin]:
        """Latest completed record regardless of age"""
        return await self._latest(service, user_id, vehicle_number, VerificationStatus.COMPLETED)

    async def create_pending(
        self,
        user_id: str,
        vehicle_number: str,
        service: str,
        request_id: Optional[str] = None,
    ) -> str:
        """Insert the audit marker written before the gateway call; returns its id"""
        model = self.model_for(service)
        now = utcnow()
        record = model(
            user_id=user_id,
            vehicle_number=vehicle_number,
            status=VerificationStatus.PENDING,
            request_id=request_id,
            created_at=now,
            updated_at=now,
        )
        self.db.add(record)
        await self.db.commit()
        await self.db.refresh(record)

        logger.debug(f"Created pending {service} verification {record.id} for {vehicle_number}")
        return record.id

    async def get(self, service: str, record_id: str) -> VerificationRecordMixin:
        model = self.model_for(service)
        result = await self.db.execute(select(model).where(model.id == record_id))
        record = result.scalar_one_or_none()
        if record is None:
            raise VerificationRecordNotFoundError(record_id)
        return record

    async def _transition(
        self,
        service: str,
        record_id: str,
        target: VerificationStatus,
        **values: Any,
    ) -> VerificationRecordMixin:
        record = await self.get(service, record_id)
        if record.status != VerificationStatus.PENDING:
            raise VerificationStateError(record_id, record.status.value, target.value)

        record.status = target
        for key, value in values.items():
            setattr(record, key, value)
        record.updated_at = utcnow()

        await self.db.commit()
        await self.db.refresh(record)
        return record

    async def mark_completed(
        self,
        service: str,
        record_id: str,
        data: Dict[str, Any],
    ) -> VerificationRecordMixin:
        return await self._transition(
            service, record_id, VerificationStatus.COMPLETED, verification_data=data
        )

    async def mark_failed(
        self,
        service: str,
        record_id: str,
        error_message: str,
    ) -> VerificationRecordMixin:
        return await self._transition(
            service, record_id, VerificationStatus.FAILED, error_message=error_message
        )

    async def attach_request_id(self, service: str, record_id: str, request_id: str) -> None:
        """Tag a pending record with the gateway's request id for webhook completion"""
        record = await self.get(service, record_id)
        if record.status != VerificationStatus.PENDING:
            raise VerificationStateError(record_id, record.status.value, VerificationStatus.PENDING.value)
        record.request_id = request_id
        record.updated_at = utcnow()
        await self.db.commit()

    async def find_by_request_id(
        self,
        request_id: str,
    ) -> Optional[Tuple[str, VerificationRecordMixin]]:
        """(service, record) for an upstream request id, newest first across all tables"""
        matches: List[Tuple[str, VerificationRecordMixin]] = []
        for service, model in RECORD_MODELS.items():
            result = await self.db.execute(
                select(model)
                .where(model.request_id == request_id)
                .order_by(model.created_at.desc())
                .limit(1)
            )
            record = result.scalar_one_or_none()
            if record is not None:
                matches.append((service, record))

        if not matches:
            return None
        return max(matches, key=lambda match: match[1].created_at)

    async def list_recent(
        self,
        user_id: str,
        vehicle_number: str,
        service: str,
        limit: int = 20,
    ) -> List[VerificationRecordMixin]:
        """Newest records of any status for the audit view"""
        model = self.model_for(service)
        result = await self.db.execute(
            select(model)
            .where(model.user_id == user_id)
            .where(model.vehicle_number == vehicle_number)
            .order_by(model.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
