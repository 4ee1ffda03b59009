import os
from decimal import Decimal


def _env_flag(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./fulfillment.db")

SECRET_KEY = os.getenv("FULFILLMENT_SECRET_KEY", "fulfillment-dev-secret")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(60 * 12)))

# Handover codes
HANDOVER_CODE_EXPIRE_MINUTES = int(os.getenv("HANDOVER_CODE_EXPIRE_MINUTES", "30"))
# Returns plaintext OTP/QR payloads in API responses. Development only.
EXPOSE_HANDOVER_CODES = _env_flag("EXPOSE_HANDOVER_CODES")

FALLBACK_DISTANCE_KM = Decimal(os.getenv("FALLBACK_DISTANCE_KM", "5"))

DB_RETRY_ATTEMPTS = int(os.getenv("DB_RETRY_ATTEMPTS", "3"))
DB_RETRY_BACKOFF_SECONDS = float(os.getenv("DB_RETRY_BACKOFF_SECONDS", "0.05"))

NOTIFICATION_MAX_ATTEMPTS = int(os.getenv("NOTIFICATION_MAX_ATTEMPTS", "5"))

CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "http://localhost:5173,http://127.0.0.1:5173").split(",")
    if origin.strip()
]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
