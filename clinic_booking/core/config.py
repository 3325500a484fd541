import os

from dotenv import load_dotenv


load_dotenv()


def _get_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _get_list(value: str | None, default: list[str]) -> list[str]:
    if not value:
        return default
    return [item.strip() for item in value.split(",") if item.strip()]

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./clinic_booking.db")
CORS_ALLOW_ORIGINS = _get_list(os.getenv("CORS_ALLOW_ORIGINS"), ["http://localhost:4200"])

DEFAULT_DOCTOR_ID = os.getenv("DEFAULT_DOCTOR_ID", "dr_default")
DEFAULT_SLOT_MINUTES = int(os.getenv("DEFAULT_SLOT_MINUTES", "15"))
DEFAULT_CAPACITY = int(os.getenv("DEFAULT_CAPACITY", "2"))
CANCELED_STATUS = os.getenv("CANCELED_STATUS", "canceled")

BOOKING_LOCK_TIMEOUT_SECONDS = float(os.getenv("BOOKING_LOCK_TIMEOUT_SECONDS", "30"))
ADMIN_LOCK_TIMEOUT_SECONDS = float(os.getenv("ADMIN_LOCK_TIMEOUT_SECONDS", "15"))

MIRROR_BASE_URL = os.getenv("MIRROR_BASE_URL", "").rstrip("/")
MIRROR_API_KEY = os.getenv("MIRROR_API_KEY", "")
MIRROR_TIMEOUT_SECONDS = float(os.getenv("MIRROR_TIMEOUT_SECONDS", "10"))
MIRROR_MAX_ATTEMPTS = int(os.getenv("MIRROR_MAX_ATTEMPTS", "3"))
MIRRORS_ENABLED = _get_bool(os.getenv("MIRRORS_ENABLED"), default=True)

CACHE_INVALIDATE_URL = os.getenv("CACHE_INVALIDATE_URL", "")
CACHE_INVALIDATE_TOKEN = os.getenv("CACHE_INVALIDATE_TOKEN", "")

JWT_SECRET_KEY = os.getenv("JWT_SECRET_KEY", "change-me")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
JWT_EXPIRES_MINUTES = int(os.getenv("JWT_EXPIRES_MINUTES", "60"))


def validate_runtime_config() -> None:
    if APP_ENV.lower() == "production" and JWT_SECRET_KEY == "change-me":
        raise RuntimeError("JWT_SECRET_KEY must be set in production.")
    if DEFAULT_SLOT_MINUTES <= 0:
        raise RuntimeError("DEFAULT_SLOT_MINUTES must be positive.")
