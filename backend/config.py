import os

from dotenv import load_dotenv

load_dotenv()

DATABASE_URL = os.getenv("DATABASE_URL", "")
SECRET_KEY = os.getenv("SECRET_KEY", "supersecretkey")
JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")
ACCESS_TOKEN_MINUTES = int(os.getenv("ACCESS_TOKEN_MINUTES", "60"))
AUTH_DISABLED = os.getenv("AUTH_DISABLED", "false").lower() == "true"

QR_SECRET_KEY = os.getenv("QR_SECRET_KEY", SECRET_KEY)
QR_CODE_TTL_SECONDS = int(os.getenv("QR_CODE_TTL_SECONDS", "300"))
PAYMENT_MAX_RETRIES = int(os.getenv("PAYMENT_MAX_RETRIES", "3"))

WEBHOOK_TIMEOUT_SECONDS = float(os.getenv("WEBHOOK_TIMEOUT_SECONDS", "30"))
WEBHOOK_MAX_RETRIES = int(os.getenv("WEBHOOK_MAX_RETRIES", "5"))
WEBHOOK_POLL_INTERVAL_SECONDS = int(os.getenv("WEBHOOK_POLL_INTERVAL_SECONDS", "10"))
WEBHOOK_RETRY_BATCH_SIZE = int(os.getenv("WEBHOOK_RETRY_BATCH_SIZE", "100"))
WEBHOOK_DELIVERY_RETENTION_DAYS = int(os.getenv("WEBHOOK_DELIVERY_RETENTION_DAYS", "30"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

_raw_origins = os.getenv("CORS_ORIGINS", "*")
CORS_ORIGINS = [o.strip() for o in _raw_origins.split(",")] if _raw_origins != "*" else ["*"]

DEFAULT_CURRENCY_NAME = "Jetons"
DEFAULT_EXCHANGE_RATE = 0.10
