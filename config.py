import os
from typing import Optional

from dotenv import load_dotenv

load_dotenv()

APP_ENV = os.getenv("APP_ENV", "development")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
PORT = int(os.getenv("PORT", 8000))

DATABASE_URL = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
DATABASE_NAME = os.getenv("DATABASE_NAME", "ecommerce")

# Public origin used to qualify stored image names
BASE_URL = os.getenv("BASE_URL", "http://localhost:8000").rstrip("/")
UPLOADS_DIR = os.getenv("UPLOADS_DIR", "uploads")
CORS_ORIGINS = [o.strip() for o in os.getenv("CORS_ORIGINS", "*").split(",") if o.strip()]

DEV_JWT_SECRET = "change-me-in-production"


def jwt_secret(app_env: str, value: Optional[str]) -> str:
    """The signing key; production refuses to fall back to the development default."""
    if value:
        return value
    if app_env == "production":
        raise RuntimeError("JWT_SECRET_KEY must be set when APP_ENV is production")
    return DEV_JWT_SECRET


JWT_SECRET_KEY = jwt_secret(APP_ENV, os.getenv("JWT_SECRET_KEY"))
JWT_ALGORITHM = "HS256"
JWT_EXPIRE_DAYS = int(os.getenv("JWT_EXPIRE_DAYS", 90))

STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
STRIPE_CURRENCY = os.getenv("STRIPE_CURRENCY", "egp")

TAX_PRICE = 0
SHIPPING_PRICE = 0

DEFAULT_PAGE_LIMIT = 50
MAX_PAGE_LIMIT = 100


def is_development() -> bool:
    return APP_ENV == "development"
