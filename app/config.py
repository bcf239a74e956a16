from functools import lru_cache
from pydantic import BaseModel
import os
from dotenv import load_dotenv
load_dotenv()  # carga el archivo .env de la raíz

class Settings(BaseModel):
    app_name: str = os.getenv("APP_NAME", "Parkway Bookings")
    env: str = os.getenv("APP_ENV", "dev")
    mongodb_uri: str = os.getenv("MONGODB_URI", "mongodb://localhost:27017")
    db_name: str = os.getenv("DB_NAME", "parkway")
    jwt_secret: str = os.getenv("JWT_SECRET", "change-me")
    jwt_expires_hours: int = int(os.getenv("JWT_EXPIRES_HOURS", "8"))
    frontend_base_url: str = os.getenv("FRONTEND_BASE_URL", "http://localhost:3000")

    # Pagos
    payment_provider: str = os.getenv("PAYMENT_PROVIDER", "mock").lower()
    stripe_secret_key: str = os.getenv("STRIPE_SECRET_KEY", "")
    stripe_webhook_secret: str = os.getenv("STRIPE_WEBHOOK_SECRET", "whsec_dev")
    currency: str = os.getenv("CURRENCY", "usd").lower()
    webhook_timeout_seconds: float = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "10"))
    webhook_max_body_bytes: int = int(os.getenv("WEBHOOK_MAX_BODY_BYTES", str(1024 * 1024)))

    # Ciclo de vida de reservas
    cron_secret: str = os.getenv("CRON_SECRET", "")
    pending_timeout_minutes: int = int(os.getenv("PENDING_TIMEOUT_MINUTES", "15"))
    start_grace_minutes: int = int(os.getenv("START_GRACE_MINUTES", "5"))
    pricing_timezone: str = os.getenv("PRICING_TIMEZONE", "UTC")
    demand_pricing_enabled: bool = os.getenv("DEMAND_PRICING_ENABLED", "false").lower() in ("1", "true", "yes")
    admission_lock_ttl_seconds: int = int(os.getenv("ADMISSION_LOCK_TTL_SECONDS", "10"))
    admission_lock_attempts: int = int(os.getenv("ADMISSION_LOCK_ATTEMPTS", "40"))
    admission_lock_wait_seconds: float = float(os.getenv("ADMISSION_LOCK_WAIT_SECONDS", "0.05"))

    # Rate limiting: "memory://", "redis://host:6379" o "mongodb://..."
    rate_limit_storage_uri: str = os.getenv("RATE_LIMIT_STORAGE_URI", "memory://")

    # Email (Resend). Sin API key los emails solo se registran en el log
    resend_api_key: str = os.getenv("RESEND_API_KEY", "")
    email_from: str = os.getenv("EMAIL_FROM", "noreply@parkway.app")


@lru_cache
def get_settings() -> Settings:
    return Settings()
