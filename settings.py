"""
Environment configuration for the Capriccio storefront API.

Every value is read from the environment with a development default. The
database credentials are the only required pair: without them the API runs in
no-backend mode (anonymous identities only, nothing persisted).
"""
import os
from datetime import timezone, tzinfo
from typing import Optional
from zoneinfo import ZoneInfo

# Database
DATABASE_URL = os.getenv("DATABASE_URL")
DATABASE_NAME = os.getenv("DATABASE_NAME")

# Auth
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret")
JWT_ALG = "HS256"
TOKEN_EXPIRE_MIN = int(os.getenv("TOKEN_EXPIRE_MIN", "60"))
CUSTOM_TOKEN_SECRET = os.getenv("CUSTOM_TOKEN_SECRET", JWT_SECRET)
ADMIN_EMAIL = os.getenv("ADMIN_EMAIL")
ADMIN_PASSWORD = os.getenv("ADMIN_PASSWORD")

# Store / order handoff
STORE_NAME = os.getenv("STORE_NAME", "CAPRICCIO APP")
PICKUP_ADDRESS = os.getenv("PICKUP_ADDRESS", "Av. Monteverde 1181, Quilmes")
WHATSAPP_NUMBER = os.getenv("WHATSAPP_NUMBER", "5491126884940")
STORE_TIMEZONE = os.getenv("STORE_TIMEZONE", "UTC")

# Image uploads (unsigned preset)
CLOUDINARY_CLOUD_NAME = os.getenv("CLOUDINARY_CLOUD_NAME")
CLOUDINARY_UPLOAD_PRESET = os.getenv("CLOUDINARY_UPLOAD_PRESET")

# Live subscriptions: seconds between remote change checks, 0 disables the watcher
SUBSCRIPTION_POLL_SECONDS = float(os.getenv("SUBSCRIPTION_POLL_SECONDS", "2"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

NO_BACKEND_WARNING = (
    "Database configuration not available. Database and admin features will not work."
)


def backend_configured() -> bool:
    return bool(DATABASE_URL and DATABASE_NAME)


def store_tz() -> tzinfo:
    if STORE_TIMEZONE.upper() == "UTC":
        return timezone.utc
    return ZoneInfo(STORE_TIMEZONE)


def upload_configured() -> bool:
    return bool(CLOUDINARY_CLOUD_NAME and CLOUDINARY_UPLOAD_PRESET)


def startup_warning() -> Optional[str]:
    return None if backend_configured() else NO_BACKEND_WARNING
