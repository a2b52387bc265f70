# Re-export all models for convenient imports
from app.models.user import User
from app.models.vehicle import Vehicle
from app.models.verification import (
    VerificationStatus,
    VerificationRecordMixin,
    RCVerification,
    FastagVerification,
    ChallanVerification,
    RECORD_MODELS,
)

__all__ = [
    # User
    "User",
    # Vehicle
    "Vehicle",
    # Verification log
    "VerificationStatus",
    "VerificationRecordMixin",
    "RCVerification",
    "FastagVerification",
    "ChallanVerification",
    "RECORD_MODELS",
]
