"""
Custom Exceptions for FleetVerify
=================================

Use these instead of generic Exception so the API layer can map each
failure to a stable error code and HTTP status.

Usage:
    from app.core.exceptions import MissingChallanFieldsError, UpstreamTransportError

    if not chassis_number or not engine_number:
        raise MissingChallanFieldsError(vehicle_number, missing)

    try:
        response = await gateway.call("rc", payload)
    except UpstreamTransportError as e:
        logger.warning(f"Gateway unreachable: {e}")
        ...
"""

from typing import Optional, Any, Dict, List


class FleetVerifyError(Exception):
    """Base exception for all FleetVerify errors"""

    status_code: int = 500

    def __init__(
        self,
        message: str,
        code: str = "INTERNAL_ERROR",
        details: Optional[Dict[str, Any]] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details
        }


# ============================================
# Authentication Errors
# ============================================

class AuthenticationError(FleetVerifyError):
    """Caller authentication failed"""

    status_code = 401

    def __init__(self, message: str = "Authentication failed"):
        super().__init__(message, code="AUTH_FAILED")


class InvalidWebhookTokenError(AuthenticationError):
    """Webhook delivered without the shared secret"""

    def __init__(self):
        super().__init__("Invalid webhook token")
        self.code = "INVALID_WEBHOOK_TOKEN"


# ============================================
# Validation Errors (400-type)
# ============================================

class ValidationError(FleetVerifyError):
    """Input validation failed"""

    status_code = 400

    def __init__(self, message: str, field: Optional[str] = None):
        details = {"field": field} if field else {}
        super().__init__(message, code="VALIDATION_ERROR", details=details)


class UnsupportedServiceError(ValidationError):
    """Verification service name not recognised"""

    def __init__(self, service: str):
        super().__init__(f"Unsupported verification service '{service}'", field="service")
        self.code = "UNSUPPORTED_SERVICE"


class MissingChallanFieldsError(FleetVerifyError):
    """Challan lookup needs chassis and engine numbers that could not be resolved"""

    status_code = 422

    def __init__(self, vehicle_number: str, missing: List[str]):
        super().__init__(
            "Chassis and engine numbers are required for challan lookup. "
            "Please provide them or complete RC verification first.",
            code="MISSING_CHALLAN_FIELDS",
            details={"vehicle_number": vehicle_number, "missing_fields": missing}
        )


# ============================================
# Upstream Gateway Errors
# ============================================

class UpstreamError(FleetVerifyError):
    """Vehicle data gateway error"""

    status_code = 502

    def __init__(self, message: str, service: Optional[str] = None):
        super().__init__(message, code="UPSTREAM_ERROR")
        if service:
            self.details["service"] = service


class UpstreamNotConfiguredError(UpstreamError):
    """Gateway URL is missing or malformed"""

    status_code = 503

    def __init__(self, service: Optional[str] = None):
        super().__init__("Vehicle data gateway is not configured", service)
        self.code = "UPSTREAM_NOT_CONFIGURED"


class UpstreamTransportError(UpstreamError):
    """Gateway unreachable after all attempts (timeout, connection reset, DNS)"""

    def __init__(self, service: str, attempts: int, reason: str = ""):
        super().__init__(
            f"Vehicle data gateway unreachable after {attempts} attempt(s)" +
            (f": {reason}" if reason else ""),
            service
        )
        self.code = "UPSTREAM_UNREACHABLE"
        self.details["attempts"] = attempts
        if reason:
            self.details["reason"] = reason[:500]  # Truncate long errors


# ============================================
# Verification Record Errors
# ============================================

class VerificationRecordNotFoundError(FleetVerifyError):
    """No verification record with the given id or upstream request id"""

    status_code = 404

    def __init__(self, identifier: str):
        super().__init__(
            f"Verification '{identifier}' not found",
            code="VERIFICATION_NOT_FOUND",
            details={"id": identifier}
        )


class VerificationStateError(FleetVerifyError):
    """Record is not in a state that allows the requested transition"""

    status_code = 409

    def __init__(self, record_id: str, current_status: str, target_status: str):
        super().__init__(
            f"Verification '{record_id}' cannot move from {current_status} to {target_status}",
            code="INVALID_STATE_TRANSITION",
            details={
                "record_id": record_id,
                "current_status": current_status,
                "target_status": target_status,
            }
        )


# ============================================
# Helper function for API responses
# ============================================

def error_response(error: FleetVerifyError) -> Dict[str, Any]:
    """Convert exception to API error response format"""
    return {
        "success": False,
        "error": error.to_dict()
    }
