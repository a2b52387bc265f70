# API endpoints
from . import health, verification

__all__ = ["health", "verification"]
