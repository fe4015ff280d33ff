import os
from pathlib import Path

from dotenv import load_dotenv

# Load .env from project root
env_path = Path(__file__).resolve().parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./booking.db")

# "production" disables test-only overrides such as the resolver lock id
ENVIRONMENT = os.getenv("ENVIRONMENT", "development")

# Public base URL used in payment links sent over SMS
APP_URL = os.getenv("APP_URL", "http://localhost:3000")

# Shared secrets for scheduled and internal entry points
CRON_SECRET = os.getenv("CRON_SECRET")
INTERNAL_SECRET = os.getenv("INTERNAL_SECRET")

# Stripe Configuration
STRIPE_SECRET_KEY = os.getenv("STRIPE_SECRET_KEY")
STRIPE_WEBHOOK_SECRET = os.getenv("STRIPE_WEBHOOK_SECRET")
# Bounded so a Stripe call made under a slot lock finishes before the lock lapses
STRIPE_TIMEOUT_SECONDS = int(os.getenv("STRIPE_TIMEOUT_SECONDS", "10"))
STRIPE_MAX_NETWORK_RETRIES = int(os.getenv("STRIPE_MAX_NETWORK_RETRIES", "1"))

# Twilio Configuration (platform-wide sender)
TWILIO_ACCOUNT_SID = os.getenv("TWILIO_ACCOUNT_SID")
TWILIO_AUTH_TOKEN = os.getenv("TWILIO_AUTH_TOKEN")
TWILIO_PHONE_NUMBER = os.getenv("TWILIO_PHONE_NUMBER")

# Postgres advisory lock ids, one per scheduled job
RESOLVE_OUTCOMES_LOCK_ID = int(os.getenv("RESOLVE_OUTCOMES_LOCK_ID", "482173"))
EXPIRE_OFFERS_LOCK_ID = int(os.getenv("EXPIRE_OFFERS_LOCK_ID", "482174"))
RECOMPUTE_SCORES_LOCK_ID = int(os.getenv("RECOMPUTE_SCORES_LOCK_ID", "482175"))
RECOMPUTE_NO_SHOW_STATS_LOCK_ID = int(os.getenv("RECOMPUTE_NO_SHOW_STATS_LOCK_ID", "482177"))
SEND_REMINDERS_LOCK_ID = int(os.getenv("SEND_REMINDERS_LOCK_ID", "482178"))

# Slot recovery tuning
SLOT_OFFER_EXPIRY_MINUTES = int(os.getenv("SLOT_OFFER_EXPIRY_MINUTES", "15"))
OFFER_COOLDOWN_SECONDS = int(os.getenv("OFFER_COOLDOWN_SECONDS", str(24 * 60 * 60)))
SLOT_LOCK_TTL_SECONDS = int(os.getenv("SLOT_LOCK_TTL_SECONDS", "30"))

# High no-show risk reminders go out for appointments starting in this window
REMINDER_WINDOW_START_HOURS = int(os.getenv("REMINDER_WINDOW_START_HOURS", "23"))
REMINDER_WINDOW_END_HOURS = int(os.getenv("REMINDER_WINDOW_END_HOURS", "25"))

# Customer self-service links
MANAGE_TOKEN_EXPIRY_DAYS = int(os.getenv("MANAGE_TOKEN_EXPIRY_DAYS", "90"))

# Rate limiting for public customer endpoints
MANAGE_RATE_LIMIT = int(os.getenv("MANAGE_RATE_LIMIT", "10"))
MANAGE_RATE_LIMIT_WINDOW_SECONDS = int(os.getenv("MANAGE_RATE_LIMIT_WINDOW_SECONDS", "60"))

# Public URL Twilio posts inbound SMS to; signatures are computed over it.
# Falls back to the request URL when unset.
TWILIO_INBOUND_WEBHOOK_URL = os.getenv("TWILIO_INBOUND_WEBHOOK_URL")


def is_production() -> bool:
    return ENVIRONMENT.lower() == "production"
