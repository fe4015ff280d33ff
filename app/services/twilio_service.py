"""
Twilio SMS Service
Sends slot offers and booking confirmations from the platform number
"""

import logging

import httpx

from .. import config

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class NotificationError(Exception):
    """Raised when an SMS could not be handed to Twilio"""

    def __init__(self, message: str, code=None):
        super().__init__(message)
        self.code = code


async def send_sms(to_phone: str, message_body: str, message_type: str = "generic") -> str:
    """
    Send SMS via Twilio

    Args:
        to_phone: Recipient phone number in E.164 format
        message_body: SMS message content
        message_type: Label used in logs (slot_offer, booking_confirmation, ...)

    Returns:
        Twilio message SID

    Raises:
        NotificationError: missing configuration, bad number or Twilio rejection
    """
    if not to_phone:
        raise NotificationError("No phone number provided")

    if not to_phone.startswith("+"):
        logger.warning(f"Phone number not in E.164 format: {to_phone}")
        raise NotificationError("Phone number must be in E.164 format (e.g., +1234567890)")

    account_sid = config.TWILIO_ACCOUNT_SID
    auth_token = config.TWILIO_AUTH_TOKEN
    from_number = config.TWILIO_PHONE_NUMBER
    if not account_sid or not auth_token or not from_number:
        logger.error("❌ Twilio credentials not configured")
        raise NotificationError("Twilio not configured")

    logger.info(f"📱 Sending SMS: type={message_type}, to={to_phone}")

    try:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{TWILIO_API_BASE}/Accounts/{account_sid}/Messages.json",
                auth=(account_sid, auth_token),
                data={"To": to_phone, "From": from_number, "Body": message_body},
                timeout=10.0,
            )
    except httpx.HTTPError as e:
        logger.error(f"❌ Twilio request failed: {str(e)}")
        raise NotificationError(f"Twilio request failed: {str(e)}") from e

    if response.status_code in [200, 201]:
        message_sid = response.json().get("sid")
        logger.info(f"✅ SMS sent successfully: {message_type} to {to_phone} (SID: {message_sid})")
        return message_sid

    try:
        error_data = response.json()
    except ValueError:
        error_data = {}
    error_message = error_data.get("message", "Unknown error")
    error_code = error_data.get("code")
    logger.error(f"❌ Twilio API error [{error_code}]: {error_message}")
    raise NotificationError(
        f"[{error_code}] {error_message}" if error_code else error_message, code=error_code
    )
