"""
SMS message bodies
Times are stored as naive UTC and shown in the shop's timezone
"""

import logging
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)


def to_shop_time(value: datetime, tz_name: str) -> datetime:
    try:
        tz = ZoneInfo(tz_name or "UTC")
    except ZoneInfoNotFoundError:
        logger.warning(f"⚠️ Unknown timezone {tz_name}, falling back to UTC")
        tz = ZoneInfo("UTC")
    return value.replace(tzinfo=timezone.utc).astimezone(tz)


def format_slot_time(value: datetime, tz_name: str) -> str:
    local = to_shop_time(value, tz_name)
    return local.strftime("%a %b %d at %I:%M %p").replace(" 0", " ")


def format_amount(amount_cents: int, currency: str = "USD") -> str:
    symbol = "$" if currency.upper() == "USD" else f"{currency.upper()} "
    return f"{symbol}{amount_cents / 100:.2f}"


def slot_offer_message(starts_at: datetime, tz_name: str) -> str:
    return f"A slot opened: {format_slot_time(starts_at, tz_name)}. Reply YES to book. Deposit required."


def offer_accepted_message(payment_url: str) -> str:
    return f"Booking confirmed! Complete payment: {payment_url}"


def booking_confirmation_message(
    shop_name: str, starts_at: datetime, tz_name: str, amount_cents: int, currency: str
) -> str:
    local = to_shop_time(starts_at, tz_name)
    date_part = local.strftime("%a %b %d").replace(" 0", " ")
    time_part = local.strftime("%I:%M %p").lstrip("0")
    return (
        f"Booked with {shop_name}: {date_part} at {time_part} ({tz_name}). "
        f"Paid {format_amount(amount_cents, currency)}. Reply STOP to opt out."
    )


def appointment_reminder_message(shop_name: str, starts_at: datetime, tz_name: str) -> str:
    return (
        f"Reminder: your appointment with {shop_name} is tomorrow, {format_slot_time(starts_at, tz_name)}. "
        f"Reply STOP to opt out."
    )
