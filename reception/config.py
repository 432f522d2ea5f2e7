import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./reception.db")

# Statement timeout applied to every PostgreSQL connection (milliseconds)
DB_STATEMENT_TIMEOUT_MS = int(os.getenv("DB_STATEMENT_TIMEOUT_MS", "10000"))

# Security - CRITICAL: No default secret key in production
SECRET_KEY = os.getenv("SECRET_KEY")
if not SECRET_KEY:
    import warnings

    warnings.warn(
        "SECRET_KEY not set! Using insecure default - DO NOT USE IN PRODUCTION", RuntimeWarning, stacklevel=2
    )
    SECRET_KEY = "INSECURE-DEV-KEY-CHANGE-IN-PRODUCTION"  # noqa: S105 - Dev fallback only

JWT_ALGORITHM = os.getenv("JWT_ALGORITHM", "HS256")

# Platform-level Twilio credentials, used when a business has no integration row
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")
TWILIO_API_BASE = os.getenv("TWILIO_API_BASE", "https://api.twilio.com/2010-04-01")
TWILIO_VALIDATE_SIGNATURE = os.getenv("TWILIO_VALIDATE_SIGNATURE", "true").lower() == "true"

# Public base URL Twilio posts to (needed for signature checks behind a proxy)
PUBLIC_WEBHOOK_BASE_URL = os.getenv("PUBLIC_WEBHOOK_BASE_URL")

SMS_SEND_TIMEOUT_SECONDS = float(os.getenv("SMS_SEND_TIMEOUT_SECONDS", "10"))

# Reminder sweep
RECEPTION_REMINDER_CRON_SECRET = os.getenv("RECEPTION_REMINDER_CRON_SECRET")
REMINDER_SWEEP_BATCH_LIMIT = int(os.getenv("REMINDER_SWEEP_BATCH_LIMIT", "150"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
