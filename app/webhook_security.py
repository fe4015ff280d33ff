"""
Webhook Security Module

Signature verification for inbound provider webhooks and shared-secret
checks for scheduled/internal entry points.
- Constant-time signature comparison
- Timestamp tolerance for Stripe payloads
- Detailed logging for security auditing
"""

import base64
import hashlib
import hmac
import json
import logging
import time
from typing import Optional

import stripe
from fastapi import Header, HTTPException, Request

from . import config

logger = logging.getLogger(__name__)

# Maximum age of webhook in seconds (5 minutes)
MAX_WEBHOOK_AGE_SECONDS = 300


class WebhookSignatureError(Exception):
    """Raised when webhook signature verification fails"""

    pass


def constant_time_compare(a: str, b: str) -> bool:
    """
    Compare two strings in constant time to prevent timing attacks.
    Uses hmac.compare_digest which is designed for this purpose.
    """
    if not a or not b:
        return False
    return hmac.compare_digest(a, b)


def compute_hmac_sha256(secret: str, payload: bytes) -> str:
    """Compute HMAC-SHA256 signature of payload"""
    return hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()


def compute_twilio_signature(auth_token: str, url: str, params: dict) -> str:
    """
    Twilio signs the full request URL followed by every POST parameter
    (name then value) sorted by name, with HMAC-SHA1, base64 encoded.
    """
    data = url + "".join(f"{key}{params[key]}" for key in sorted(params))
    digest = hmac.new(auth_token.encode("utf-8"), data.encode("utf-8"), hashlib.sha1).digest()
    return base64.b64encode(digest).decode("utf-8")


async def verify_stripe_webhook(request: Request, secret: Optional[str]) -> dict:
    """
    Verify a Stripe webhook and return the event payload as a plain dict.

    Stripe sends 'Stripe-Signature: t=<timestamp>,v1=<signature>'; the SDK checks
    the HMAC over '<timestamp>.<payload>' and the timestamp tolerance.
    """
    if not secret:
        logger.error("❌ STRIPE_WEBHOOK_SECRET not configured")
        raise HTTPException(status_code=500, detail="Webhook secret not configured")

    raw_body = await request.body()
    signature_header = request.headers.get("Stripe-Signature", "")

    if not signature_header:
        logger.warning("🚫 Stripe webhook missing signature header")
        raise HTTPException(status_code=400, detail="Missing signature")

    try:
        stripe.Webhook.construct_event(
            raw_body, signature_header, secret, tolerance=MAX_WEBHOOK_AGE_SECONDS
        )
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning(f"🚫 Stripe webhook signature invalid: {e}")
        raise HTTPException(status_code=400, detail="Invalid signature") from e

    event = json.loads(raw_body)
    logger.debug(f"✅ Stripe webhook signature verified: {event.get('id')}")
    return event


async def verify_twilio_request(request: Request, auth_token: Optional[str]) -> dict:
    """
    Verify X-Twilio-Signature and return the form parameters.

    Raises WebhookSignatureError so the caller can answer in TwiML.
    """
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    if not auth_token:
        logger.error("❌ TWILIO_AUTH_TOKEN not configured")
        raise WebhookSignatureError("Twilio auth token not configured")

    signature = request.headers.get("X-Twilio-Signature", "")
    url = config.TWILIO_INBOUND_WEBHOOK_URL or str(request.url)
    expected = compute_twilio_signature(auth_token, url, params)

    if not constant_time_compare(expected, signature):
        logger.warning(f"🚫 Twilio signature mismatch for {url}")
        raise WebhookSignatureError("Invalid Twilio signature")

    return params


def require_shared_secret(header_name: str, setting_name: str):
    """
    Build a FastAPI dependency that checks a shared-secret header against a
    config setting. A missing setting is a configuration error (500), never
    retried; a wrong or missing header is 401.
    """

    def dependency(provided: Optional[str] = Header(None, alias=header_name)) -> None:
        expected = getattr(config, setting_name)
        if not expected:
            logger.error(f"❌ {setting_name} not configured")
            raise HTTPException(status_code=500, detail=f"{setting_name} not configured")
        if not constant_time_compare(provided or "", expected):
            logger.warning(f"🚫 Rejected request with bad {header_name} header")
            raise HTTPException(status_code=401, detail="Unauthorized")

    return dependency


verify_cron_secret = require_shared_secret("x-cron-secret", "CRON_SECRET")
verify_internal_secret = require_shared_secret("x-internal-secret", "INTERNAL_SECRET")


def create_webhook_signature(secret: str, payload: bytes, provider: str = "stripe", **kwargs) -> str:
    """
    Create a webhook signature for testing or for replaying events.

    Args:
        secret: Signing secret (Stripe endpoint secret or Twilio auth token)
        payload: Request body bytes (ignored for Twilio, which signs url + params)
        provider: 'stripe' or 'twilio'
    """
    if provider == "stripe":
        timestamp = kwargs.get("timestamp") or int(time.time())
        signed_payload = f"{timestamp}.".encode() + payload
        return f"t={timestamp},v1={compute_hmac_sha256(secret, signed_payload)}"
    if provider == "twilio":
        return compute_twilio_signature(secret, kwargs["url"], kwargs.get("params", {}))
    raise ValueError(f"Unknown provider: {provider}")
