# Pydantic schemas
from app.schemas.verification import (
    VehicleInfoRequest,
    ServiceVerificationRequest,
    WebhookPayload,
    WebhookAck,
    VerificationHistoryItem,
    VerificationHistoryResponse,
)

__all__ = [
    "VehicleInfoRequest",
    "ServiceVerificationRequest",
    "WebhookPayload",
    "WebhookAck",
    "VerificationHistoryItem",
    "VerificationHistoryResponse",
]
