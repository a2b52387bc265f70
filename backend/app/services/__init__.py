from app.services.upstream_gateway import UpstreamGatewayClient, GatewayResponse
from app.services.verification_cache import VerificationCacheStore
from app.services.vehicle_updater import VehicleRecordUpdater
from app.services.single_flight import SingleFlight, verification_flights

# Verification pipeline
from app.services.verification_orchestrator import (
    VerificationService,
    VerificationRequest,
    VerificationResult,
)
from app.services.verification_retention import VerificationRetentionJob

__all__ = [
    # Building blocks
    "UpstreamGatewayClient",
    "GatewayResponse",
    "VerificationCacheStore",
    "VehicleRecordUpdater",
    "SingleFlight",
    "verification_flights",
    # Pipeline
    "VerificationService",
    "VerificationRequest",
    "VerificationResult",
    "VerificationRetentionJob",
]
