"""
Vehicle verification API endpoints (RC, FASTag, Challans)

Every lookup answers HTTP 200 with the shape
{success, data | null, cached, error?, details?, dataAge?, verifiedAt?};
only authentication (401) and malformed requests (400 / 422) are non-200.
"""
from fastapi import APIRouter, Depends, Header, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Optional, Dict, Any

from app.core.database import get_db
from app.core.exceptions import InvalidWebhookTokenError, ValidationError
from app.core.logging_config import logger
from app.core.security import verify_webhook_token
from app.models.user import User
from app.modules.auth.dependencies import get_current_user
from app.schemas.verification import (
    VehicleInfoRequest,
    ServiceVerificationRequest,
    WebhookPayload,
    WebhookAck,
    VerificationHistoryResponse,
)
from app.services.upstream_gateway import UpstreamGatewayClient
from app.services.verification_orchestrator import VerificationService, VerificationRequest
from app.utils.normalizers import normalize_service, sanitize_vehicle_number

router = APIRouter(prefix="/verification", tags=["verification"])


def get_gateway_client() -> UpstreamGatewayClient:
    return UpstreamGatewayClient()


def get_verification_service(
    db: AsyncSession = Depends(get_db),
    gateway: UpstreamGatewayClient = Depends(get_gateway_client),
) -> VerificationService:
    return VerificationService(db, gateway)


def _clean_identity(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    return value.strip().upper() or None


async def _verify(
    verification: VerificationService,
    user: User,
    service: str,
    vehicle_number: Optional[str],
    chassis: Optional[str],
    engine_no: Optional[str],
    force_refresh: bool,
) -> Dict[str, Any]:
    number = sanitize_vehicle_number(vehicle_number)
    if not number:
        raise ValidationError("Vehicle number is required", field="vehicleNumber")

    logger.info(f"{service} verification requested for {number} (forceRefresh={force_refresh})")
    result = await verification.verify(
        service,
        VerificationRequest(
            user_id=str(user.id),
            vehicle_number=number,
            force_refresh=force_refresh,
            chassis=_clean_identity(chassis),
            engine_no=_clean_identity(engine_no),
        ),
    )
    return result.to_response()


@router.post("/vehicle-info")
async def vehicle_info(
    body: VehicleInfoRequest,
    current_user: User = Depends(get_current_user),
    verification: VerificationService = Depends(get_verification_service),
):
    """
    Unified lookup: {type|service, vehicleNumber|vehicleId, chassis?, engine_no?, forceRefresh?}
    """
    if not body.service or not body.vehicle_number:
        raise ValidationError("Missing required params: type, vehicleNumber")

    return await _verify(
        verification,
        current_user,
        normalize_service(body.service),
        body.vehicle_number,
        body.chassis,
        body.engine_no,
        body.force_refresh,
    )


@router.post("/webhook", response_model=WebhookAck)
async def verification_webhook(
    payload: WebhookPayload,
    x_webhook_token: Optional[str] = Header(None),
    verification: VerificationService = Depends(get_verification_service),
):
    """
    Completion callback from the gateway for lookups it answered asynchronously.
    """
    if not verify_webhook_token(x_webhook_token):
        logger.log_auth_event("webhook", success=False, reason="invalid token")
        raise InvalidWebhookTokenError()

    ack = await verification.handle_webhook(
        request_id=payload.request_id,
        event_type=payload.event_type,
        data=payload.data,
        error_message=payload.error_message,
    )
    return WebhookAck(**ack)


@router.get("/history/{service}/{vehicle_number}", response_model=VerificationHistoryResponse)
async def verification_history(
    service: str,
    vehicle_number: str,
    limit: int = Query(20, ge=1, le=100),
    current_user: User = Depends(get_current_user),
    verification: VerificationService = Depends(get_verification_service),
):
    """Newest verification records for one of the caller's vehicles"""
    service_name = normalize_service(service)
    number = sanitize_vehicle_number(vehicle_number)
    items = await verification.history(str(current_user.id), service_name, number, limit)
    return VerificationHistoryResponse(service=service_name, vehicle_number=number, items=items)


@router.post("/{service}")
async def verify_service(
    service: str,
    body: ServiceVerificationRequest,
    current_user: User = Depends(get_current_user),
    verification: VerificationService = Depends(get_verification_service),
):
    """Per-service route: /verification/rc, /verification/fastag, /verification/challans"""
    return await _verify(
        verification,
        current_user,
        normalize_service(service),
        body.vehicle_number,
        body.chassis,
        body.engine_no,
        body.force_refresh,
    )
