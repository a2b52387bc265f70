from fastapi import APIRouter
from app.api.v1.endpoints import health, verification

api_router = APIRouter()

# Liveness / readiness probes (use /health/ready for the load balancer)
api_router.include_router(health.router)


@api_router.get("/health", tags=["Health"])
async def health_check():
    """Simple health check endpoint for load balancer"""
    return {"status": "healthy", "service": "fleetverify-backend"}


api_router.include_router(verification.router)
