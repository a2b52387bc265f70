"""
Vehicle Record Updater - the only writer of verification-derived vehicle columns.

Applies normalized RC / FASTag / Challan payloads onto the vehicles table,
on fresh results and on stale-cache fallbacks alike. Blank values in a
payload never overwrite known values.
"""

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.logging_config import logger
from app.core.types import utcnow
from app.models.vehicle import Vehicle
from app.utils.normalizers import is_blank, parse_iso_date

# normalized RC key -> vehicle column
RC_COLUMN_MAP = {
    "ownerName": "owner_name",
    "make": "make",
    "model": "model",
    "year": "year",
    "fuelType": "fuel_type",
    "registrationAuthority": "registration_authority",
    "permanentAddress": "permanent_address",
    "financer": "financer",
    "chassisNumber": "chassis_number",
    "engineNumber": "engine_number",
}

RC_DATE_COLUMN_MAP = {
    "registrationDate": "registration_date",
    "insuranceExpiry": "insurance_expiry",
    "puccExpiry": "pollution_expiry",
    "fitnessExpiry": "fitness_expiry",
}

# Fields that make an RC record complete enough to skip re-verification
RC_REQUIRED_FOR_COMPLETE = ("owner_name", "chassis_number", "engine_number", "registration_date")


class VehicleRecordUpdater:
    """Write extracted verification fields onto Vehicle rows"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_vehicle(self, user_id: str, vehicle_number: str) -> Optional[Vehicle]:
        result = await self.db.execute(
            select(Vehicle)
            .where(Vehicle.user_id == user_id)
            .where(Vehicle.number == vehicle_number)
        )
        return result.scalar_one_or_none()

    @staticmethod
    def _set_if_present(vehicle: Vehicle, column: str, value: Any) -> None:
        if not is_blank(value):
            setattr(vehicle, column, value)

    async def apply_rc(
        self,
        user_id: str,
        vehicle_number: str,
        data: Dict[str, Any],
        verified_at: Optional[datetime] = None,
    ) -> Vehicle:
        """Upsert the vehicle from an RC payload"""
        vehicle = await self.get_vehicle(user_id, vehicle_number)
        if vehicle is None:
            vehicle = Vehicle(user_id=user_id, number=vehicle_number)
            self.db.add(vehicle)
            logger.info(f"Creating vehicle {vehicle_number} from RC data")

        for key, column in RC_COLUMN_MAP.items():
            self._set_if_present(vehicle, column, data.get(key))
        for key, column in RC_DATE_COLUMN_MAP.items():
            self._set_if_present(vehicle, column, parse_iso_date(data.get(key)))

        if data.get("isFinanced") is not None:
            vehicle.is_financed = bool(data["isFinanced"])

        vehicle.rc_verified_at = verified_at or utcnow()
        vehicle.rc_verification_status = "verified"
        vehicle.rc_data_complete = all(
            not is_blank(getattr(vehicle, column)) for column in RC_REQUIRED_FOR_COMPLETE
        )

        await self.db.commit()
        await self.db.refresh(vehicle)
        return vehicle

    async def apply_fastag(
        self,
        user_id: str,
        vehicle_number: str,
        data: Dict[str, Any],
        synced_at: Optional[datetime] = None,
    ) -> Optional[Vehicle]:
        vehicle = await self.get_vehicle(user_id, vehicle_number)
        if vehicle is None:
            logger.debug(f"No vehicle {vehicle_number} to update with FASTag data")
            return None

        vehicle.fasttag_balance = data.get("balance") or 0
        vehicle.fasttag_linked = bool(data.get("linked"))
        self._set_if_present(vehicle, "fasttag_tag_id", data.get("tagId"))
        self._set_if_present(vehicle, "fasttag_status", data.get("status"))
        self._set_if_present(vehicle, "fasttag_bank_name", data.get("bankName"))
        vehicle.fasttag_last_synced_at = synced_at or utcnow()

        await self.db.commit()
        await self.db.refresh(vehicle)
        return vehicle

    async def apply_challans(
        self,
        user_id: str,
        vehicle_number: str,
        data: Dict[str, Any],
        synced_at: Optional[datetime] = None,
    ) -> Optional[Vehicle]:
        vehicle = await self.get_vehicle(user_id, vehicle_number)
        if vehicle is None:
            logger.debug(f"No vehicle {vehicle_number} to update with challan data")
            return None

        challans = data.get("challans") or []
        total = data.get("totalChallans")
        vehicle.challans_count = total if isinstance(total, int) else len(challans)
        vehicle.challans_last_synced_at = synced_at or utcnow()

        await self.db.commit()
        await self.db.refresh(vehicle)
        return vehicle

    async def apply(
        self,
        service: str,
        user_id: str,
        vehicle_number: str,
        data: Dict[str, Any],
        at: Optional[datetime] = None,
    ) -> Optional[Vehicle]:
        if service == "rc":
            return await self.apply_rc(user_id, vehicle_number, data, at)
        if service == "fastag":
            return await self.apply_fastag(user_id, vehicle_number, data, at)
        return await self.apply_challans(user_id, vehicle_number, data, at)

    async def remember_identity_numbers(
        self,
        vehicle: Vehicle,
        chassis_number: Optional[str],
        engine_number: Optional[str],
    ) -> None:
        """Persist caller-supplied chassis / engine numbers the vehicle lacks"""
        changed = False
        if chassis_number and not vehicle.chassis_number:
            vehicle.chassis_number = chassis_number
            changed = True
        if engine_number and not vehicle.engine_number:
            vehicle.engine_number = engine_number
            changed = True
        if changed:
            await self.db.commit()
            await self.db.refresh(vehicle)
