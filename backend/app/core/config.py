from pydantic_settings import BaseSettings
from typing import List, Any
import json
from pathlib import Path


def parse_cors_origins(v: Any) -> List[str]:
    """Parse CORS origins from string or list"""
    if isinstance(v, list):
        return v
    if isinstance(v, str):
        # Try JSON parsing first
        if v.startswith('['):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                pass
        # Fall back to comma-separated
        return [origin.strip() for origin in v.split(',') if origin.strip()]
    return []


class Settings(BaseSettings):
    """Application settings - all configurable via environment variables"""

    # ==========================================
    # Application
    # ==========================================
    APP_NAME: str = "FleetVerify"
    ENVIRONMENT: str = "development"
    DEBUG: bool = True
    API_VERSION: str = "v1"

    # Server Configuration
    SERVER_HOST: str = "0.0.0.0"
    SERVER_PORT: int = 8000

    # ==========================================
    # Database
    # ==========================================
    DATABASE_URL: str
    DB_ECHO: bool = False

    # ==========================================
    # Authentication (tokens are issued by the identity service)
    # ==========================================
    JWT_SECRET_KEY: str
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 hours

    # ==========================================
    # CORS (stored as comma-separated string, parsed to list)
    # ==========================================
    CORS_ORIGINS_STR: str = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"

    @property
    def CORS_ORIGINS(self) -> List[str]:
        """Parse CORS origins from comma-separated string"""
        return parse_cors_origins(self.CORS_ORIGINS_STR)

    # ==========================================
    # Logging
    # ==========================================
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "logs/app.log"

    # ==========================================
    # Vehicle Data Gateway (Lambda-style proxy in front of the data provider)
    # ==========================================
    VEHICLE_GATEWAY_URL: str = ""
    VEHICLE_GATEWAY_PROXY_TOKEN: str = ""  # sent as x-proxy-token
    VEHICLE_GATEWAY_API_KEY: str = ""  # sent as x-api-key

    # Per-service upstream policy
    RC_TIMEOUT_SECONDS: float = 10.0
    RC_MAX_ATTEMPTS: int = 3
    RC_BACKOFF: str = "exponential"  # 1s -> 2s
    FASTAG_TIMEOUT_SECONDS: float = 30.0
    FASTAG_MAX_ATTEMPTS: int = 2
    FASTAG_BACKOFF: str = "exponential"
    CHALLANS_TIMEOUT_SECONDS: float = 30.0
    CHALLANS_MAX_ATTEMPTS: int = 2
    CHALLANS_BACKOFF: str = "linear"  # 1s * attempt
    GATEWAY_BACKOFF_BASE_SECONDS: float = 1.0

    # ==========================================
    # Verification Cache Windows
    # ==========================================
    FASTAG_FRESH_MINUTES: int = 30
    FASTAG_STALE_HOURS: int = 6
    CHALLANS_FRESH_MINUTES: int = 30

    # Collapse concurrent identical verifications into one upstream call
    SINGLE_FLIGHT_ENABLED: bool = True

    # ==========================================
    # Gateway completion webhook
    # ==========================================
    WEBHOOK_SECRET: str = ""  # compared against x-webhook-token

    # ==========================================
    # Verification log retention (maintenance job, never on the hot path)
    # ==========================================
    RETENTION_KEEP_COMPLETED: int = 5
    RETENTION_KEEP_FAILED: int = 1
    PENDING_EXPIRY_MINUTES: int = 60

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra fields in .env that aren't defined in Settings

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        if self.LOG_FILE:
            Path(self.LOG_FILE).parent.mkdir(exist_ok=True, parents=True)

    def gateway_policy(self, service: str) -> dict:
        """Timeout / attempts / backoff for one upstream service"""
        prefix = service.upper()
        return {
            "timeout": getattr(self, f"{prefix}_TIMEOUT_SECONDS"),
            "max_attempts": getattr(self, f"{prefix}_MAX_ATTEMPTS"),
            "backoff": getattr(self, f"{prefix}_BACKOFF"),
            "base_delay": self.GATEWAY_BACKOFF_BASE_SECONDS,
        }

    @property
    def gateway_configured(self) -> bool:
        return self.VEHICLE_GATEWAY_URL.startswith(("http://", "https://"))


# Create settings instance
settings = Settings()
