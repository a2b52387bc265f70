"""
Verification Orchestrators
==========================
One pipeline shared by the RC, FASTag and Challan lookups:

    fresh cache? -> pending record -> gateway (with retries) -> classify
        success -> completed record + vehicle update
        failure -> failed record -> stale cache fallback (vehicle updated too)

Every outcome is a VerificationResult with the same response shape:

    {success, data | null, cached, error?, details?, dataAge?, verifiedAt?}

success=false with data present means "showable but stale";
success=false with data=null means there is nothing to show.

Usage:
    from app.services.verification_orchestrator import VerificationService, VerificationRequest

    service = VerificationService(db)
    result = await service.verify(
        "fastag",
        VerificationRequest(user_id=user.id, vehicle_number="KA01AB1234"),
    )
    return result.to_response()
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (
    FleetVerifyError,
    MissingChallanFieldsError,
    UpstreamError,
    ValidationError,
    VerificationRecordNotFoundError,
)
from app.core.logging_config import logger, set_vehicle_number
from app.core.types import utcnow
from app.models.vehicle import Vehicle
from app.models.verification import VerificationRecordMixin
from app.services.response_classifier import (
    classify,
    extract,
    extract_request_id,
    failure_reason,
    is_processing,
)
from app.services.single_flight import SingleFlight, verification_flights
from app.services.upstream_gateway import UpstreamGatewayClient
from app.services.vehicle_updater import VehicleRecordUpdater
from app.services.verification_cache import VerificationCacheStore
from app.utils.normalizers import format_data_age, isoformat_utc

SERVICE_LABELS = {
    "rc": "RC",
    "fastag": "FASTag",
    "challans": "Challans",
}

WEBHOOK_EVENTS = ("validation_completed", "validation_failed", "validation_processing")


@dataclass
class VerificationRequest:
    user_id: str
    vehicle_number: str
    force_refresh: bool = False
    chassis: Optional[str] = None
    engine_no: Optional[str] = None


@dataclass
class VerificationResult:
    success: bool
    data: Optional[Dict[str, Any]]
    cached: bool
    error: Optional[str] = None
    details: Optional[str] = None
    data_age: Optional[str] = None
    verified_at: Optional[datetime] = None

    def to_response(self) -> Dict[str, Any]:
        """Wire shape; optional keys are omitted when unset"""
        response: Dict[str, Any] = {
            "success": self.success,
            "data": self.data,
            "cached": self.cached,
        }
        if self.error is not None:
            response["error"] = self.error
        if self.details is not None:
            response["details"] = self.details
        if self.data_age is not None:
            response["dataAge"] = self.data_age
        if self.verified_at is not None:
            response["verifiedAt"] = isoformat_utc(self.verified_at)
        return response


class VerificationOrchestrator:
    """Base pipeline; subclasses set the service and its cache policy"""

    service: str = ""

    def __init__(
        self,
        db: AsyncSession,
        gateway: UpstreamGatewayClient,
        cache: Optional[VerificationCacheStore] = None,
        updater: Optional[VehicleRecordUpdater] = None,
    ):
        self.db = db
        self.gateway = gateway
        self.cache = cache or VerificationCacheStore(db)
        self.updater = updater or VehicleRecordUpdater(db)

    @property
    def label(self) -> str:
        return SERVICE_LABELS[self.service]

    # ------------------------------------------------------------------
    # Policy hooks
    # ------------------------------------------------------------------

    def fresh_window(self) -> Optional[timedelta]:
        """Rolling freshness window; None means any completed record is fresh"""
        return None

    def fallback_windows(self) -> Sequence[Optional[timedelta]]:
        """Progressively wider stale-read windows tried after a failure"""
        return (None,)

    async def find_cached(self, request: VerificationRequest) -> Optional[VerificationResult]:
        window = self.fresh_window()
        if window is None:
            record = await self.cache.find_latest_completed(
                request.user_id, request.vehicle_number, self.service
            )
        else:
            record = await self.cache.find_fresh(
                request.user_id, request.vehicle_number, self.service, utcnow() - window
            )
        if record is None:
            return None
        return VerificationResult(
            success=True,
            data=record.verification_data,
            cached=True,
            verified_at=record.created_at,
        )

    async def build_payload(self, request: VerificationRequest) -> Dict[str, Any]:
        return self.gateway.build_payload(self.service, request.vehicle_number)

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    async def verify(self, request: VerificationRequest) -> VerificationResult:
        if not request.force_refresh:
            cached = await self.find_cached(request)
            if cached is not None:
                logger.log_verification_event(self.service, request.vehicle_number, "fresh_cache_hit", cached=True)
                return cached

        payload = await self.build_payload(request)
        record_id = await self.cache.create_pending(request.user_id, request.vehicle_number, self.service)

        try:
            response = await self.gateway.call(self.service, payload)
        except UpstreamError as e:
            await self.cache.mark_failed(self.service, record_id, e.message)
            logger.log_verification_event(
                self.service, request.vehicle_number, "upstream_unreachable", success=False, error=e.message
            )
            return await self.fallback(
                request,
                error=f"{self.label} service temporarily unavailable",
                details=e.message,
            )

        classification = classify(response.parsed_body, response.ok, self.service)

        if classification.success:
            data = extract(self.service, response.parsed_body, request.vehicle_number)
            record = await self.cache.mark_completed(self.service, record_id, data)
            await self.updater.apply(self.service, request.user_id, request.vehicle_number, data)
            logger.log_verification_event(
                self.service, request.vehicle_number, "verified",
                rule=classification.rule, envelope=classification.shape.value,
                attempts=response.attempts,
            )
            return VerificationResult(
                success=True,
                data=record.verification_data,
                cached=False,
                verified_at=record.created_at,
            )

        if is_processing(response.parsed_body):
            request_id = extract_request_id(response.parsed_body)
            await self.cache.attach_request_id(self.service, record_id, request_id)
            logger.log_verification_event(
                self.service, request.vehicle_number, "processing", success=False, upstream_request_id=request_id
            )
            return await self.fallback(
                request,
                error=f"{self.label} verification in progress",
                details=f"Upstream request {request_id} is still processing",
            )

        reason = failure_reason(response.parsed_body, response.raw_body, response.status_code)
        await self.cache.mark_failed(self.service, record_id, reason)
        logger.log_verification_event(
            self.service, request.vehicle_number, "upstream_rejected", success=False,
            rule=classification.rule, upstream_status=response.status_code, error=reason,
        )
        return await self.fallback(request, error=f"{self.label} verification failed", details=reason)

    async def fallback(
        self,
        request: VerificationRequest,
        error: str,
        details: Optional[str] = None,
    ) -> VerificationResult:
        """Serve the newest completed record inside the widening fallback windows"""
        now = utcnow()
        for window in self.fallback_windows():
            if window is None:
                record = await self.cache.find_latest_completed(
                    request.user_id, request.vehicle_number, self.service
                )
            else:
                record = await self.cache.find_fresh(
                    request.user_id, request.vehicle_number, self.service, now - window
                )
            if record is not None:
                return await self._stale_result(request, record, error, details, now)

        return VerificationResult(success=False, data=None, cached=False, error=error, details=details)

    async def _stale_result(
        self,
        request: VerificationRequest,
        record: VerificationRecordMixin,
        error: str,
        details: Optional[str],
        now: datetime,
    ) -> VerificationResult:
        data = record.verification_data or {}
        await self.updater.apply(self.service, request.user_id, request.vehicle_number, data, record.created_at)
        data_age = format_data_age(record.created_at, now)
        logger.log_verification_event(
            self.service, request.vehicle_number, "stale_fallback", cached=True, success=False, data_age=data_age
        )
        return VerificationResult(
            success=False,
            data=record.verification_data,
            cached=True,
            error=error,
            details=details,
            data_age=data_age,
            verified_at=record.created_at,
        )


class RCVerificationOrchestrator(VerificationOrchestrator):
    """RC data does not expire: any earlier verification is served until forced"""

    service = "rc"

    async def find_cached(self, request: VerificationRequest) -> Optional[VerificationResult]:
        cached = await super().find_cached(request)
        if cached is not None:
            return cached

        # Vehicles verified before the log existed carry the RC fields themselves
        vehicle = await self.updater.get_vehicle(request.user_id, request.vehicle_number)
        if vehicle is not None and vehicle.rc_verified_at and vehicle.owner_name:
            return VerificationResult(
                success=True,
                data=rc_data_from_vehicle(vehicle),
                cached=True,
                verified_at=vehicle.rc_verified_at,
            )
        return None


class FastagVerificationOrchestrator(VerificationOrchestrator):
    service = "fastag"

    def fresh_window(self) -> Optional[timedelta]:
        return timedelta(minutes=settings.FASTAG_FRESH_MINUTES)

    def fallback_windows(self) -> Sequence[Optional[timedelta]]:
        return (timedelta(hours=settings.FASTAG_STALE_HOURS), None)


class ChallanVerificationOrchestrator(VerificationOrchestrator):
    """Challan lookups need chassis and engine numbers, backfilled from RC"""

    service = "challans"

    def __init__(
        self,
        db: AsyncSession,
        gateway: UpstreamGatewayClient,
        cache: Optional[VerificationCacheStore] = None,
        updater: Optional[VehicleRecordUpdater] = None,
        rc_orchestrator: Optional[RCVerificationOrchestrator] = None,
    ):
        super().__init__(db, gateway, cache, updater)
        self.rc_orchestrator = rc_orchestrator or RCVerificationOrchestrator(
            db, gateway, self.cache, self.updater
        )

    def fresh_window(self) -> Optional[timedelta]:
        return timedelta(minutes=settings.CHALLANS_FRESH_MINUTES)

    async def build_payload(self, request: VerificationRequest) -> Dict[str, Any]:
        chassis, engine_no = await self.resolve_identity_numbers(request)
        return self.gateway.build_payload(self.service, request.vehicle_number, chassis, engine_no)

    async def resolve_identity_numbers(self, request: VerificationRequest):
        """
        Chassis / engine numbers from the request, then the vehicle, then a
        single non-forced RC verification.

        Raises:
            MissingChallanFieldsError: still missing after the RC backfill
        """
        chassis = request.chassis
        engine_no = request.engine_no

        vehicle = await self.updater.get_vehicle(request.user_id, request.vehicle_number)
        if vehicle is not None:
            await self.updater.remember_identity_numbers(vehicle, chassis, engine_no)
            chassis = chassis or vehicle.chassis_number
            engine_no = engine_no or vehicle.engine_number

        if not chassis or not engine_no:
            logger.info(f"Backfilling chassis/engine for {request.vehicle_number} from RC")
            rc_result = await self.rc_orchestrator.verify(
                VerificationRequest(user_id=request.user_id, vehicle_number=request.vehicle_number)
            )
            rc_data = rc_result.data or {}
            vehicle = await self.updater.get_vehicle(request.user_id, request.vehicle_number)
            chassis = chassis or (vehicle.chassis_number if vehicle else None) or rc_data.get("chassisNumber")
            engine_no = engine_no or (vehicle.engine_number if vehicle else None) or rc_data.get("engineNumber")

        missing = [
            name for name, value in (("chassis_number", chassis), ("engine_number", engine_no)) if not value
        ]
        if missing:
            raise MissingChallanFieldsError(request.vehicle_number, missing)

        return chassis, engine_no


def rc_data_from_vehicle(vehicle: Vehicle) -> Dict[str, Any]:
    """RC payload rebuilt from the vehicle row, same keys as extract_rc"""

    def iso(value):
        return value.isoformat() if value else None

    return {
        "number": vehicle.number,
        "ownerName": vehicle.owner_name,
        "make": vehicle.make,
        "model": vehicle.model,
        "year": vehicle.year,
        "fuelType": vehicle.fuel_type,
        "vehicleClass": None,
        "registrationDate": iso(vehicle.registration_date),
        "registrationAuthority": vehicle.registration_authority,
        "chassisNumber": vehicle.chassis_number,
        "engineNumber": vehicle.engine_number,
        "fitnessExpiry": iso(vehicle.fitness_expiry),
        "puccExpiry": iso(vehicle.pollution_expiry),
        "insuranceExpiry": iso(vehicle.insurance_expiry),
        "insuranceCompany": None,
        "permanentAddress": vehicle.permanent_address,
        "financer": vehicle.financer,
        "isFinanced": bool(vehicle.is_financed),
        "rcStatus": None,
    }


class VerificationService:
    """
    Entry point used by the API: routes to the service orchestrator behind the
    single-flight gate and turns unexpected failures into success=false results.
    """

    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[UpstreamGatewayClient] = None,
        flights: Optional[SingleFlight] = None,
    ):
        self.db = db
        self.gateway = gateway or UpstreamGatewayClient()
        self.flights = flights or verification_flights
        self.cache = VerificationCacheStore(db)
        self.updater = VehicleRecordUpdater(db)

        rc = RCVerificationOrchestrator(db, self.gateway, self.cache, self.updater)
        self.orchestrators: Dict[str, VerificationOrchestrator] = {
            "rc": rc,
            "fastag": FastagVerificationOrchestrator(db, self.gateway, self.cache, self.updater),
            "challans": ChallanVerificationOrchestrator(
                db, self.gateway, self.cache, self.updater, rc_orchestrator=rc
            ),
        }

    async def verify(self, service: str, request: VerificationRequest) -> VerificationResult:
        orchestrator = self.orchestrators[service]
        set_vehicle_number(request.vehicle_number)

        async def run() -> VerificationResult:
            try:
                return await orchestrator.verify(request)
            except (ValidationError, MissingChallanFieldsError):
                raise
            except Exception as e:
                logger.log_error_with_context(
                    e, f"{service} verification", vehicle_number=request.vehicle_number
                )
                await self.db.rollback()
                message = e.message if isinstance(e, FleetVerifyError) else (str(e) or type(e).__name__)
                return VerificationResult(
                    success=False,
                    data=None,
                    cached=False,
                    error=f"{orchestrator.label} verification failed",
                    details=message,
                )

        if not settings.SINGLE_FLIGHT_ENABLED:
            return await run()
        key = (request.user_id, request.vehicle_number, service, request.force_refresh)
        return await self.flights.run(key, run)

    async def handle_webhook(
        self,
        request_id: str,
        event_type: str,
        data: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Apply an asynchronous completion from the gateway.

        Raises:
            ValidationError: unknown event type
            VerificationRecordNotFoundError: no record carries request_id
            VerificationStateError: record already completed or failed
        """
        if event_type not in WEBHOOK_EVENTS:
            raise ValidationError(f"Unsupported event type '{event_type}'", field="event_type")

        match = await self.cache.find_by_request_id(request_id)
        if match is None:
            raise VerificationRecordNotFoundError(request_id)
        service, record = match
        set_vehicle_number(record.vehicle_number)

        if event_type == "validation_processing":
            logger.info(f"Webhook: {service} request {request_id} still processing")
            return {"request_id": request_id, "service": service, "status": record.status.value}

        if event_type == "validation_completed":
            normalized = extract(service, data if isinstance(data, dict) else {}, record.vehicle_number)
            record = await self.cache.mark_completed(service, record.id, normalized)
            await self.updater.apply(service, record.user_id, record.vehicle_number, normalized)
            logger.log_verification_event(service, record.vehicle_number, "webhook_completed", upstream_request_id=request_id)
        else:
            record = await self.cache.mark_failed(
                service, record.id, error_message or f"{SERVICE_LABELS[service]} verification failed"
            )
            logger.log_verification_event(
                service, record.vehicle_number, "webhook_failed", success=False, upstream_request_id=request_id
            )

        return {"request_id": request_id, "service": service, "status": record.status.value}

    async def history(
        self,
        user_id: str,
        service: str,
        vehicle_number: str,
        limit: int = 20,
    ) -> List[Dict[str, Any]]:
        records = await self.cache.list_recent(user_id, vehicle_number, service, limit)
        return [
            {
                "id": r.id,
                "status": r.status.value,
                "data": r.verification_data,
                "error": r.error_message,
                "requestId": r.request_id,
                "createdAt": isoformat_utc(r.created_at),
                "updatedAt": isoformat_utc(r.updated_at),
            }
            for r in records
        ]
