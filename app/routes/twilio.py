"""
Twilio inbound SMS webhook
Handles opt-out/opt-in keywords and YES replies to slot offers
"""

import logging
from typing import Optional
from xml.sax.saxutils import escape

from fastapi import APIRouter, Depends, Request, Response
from sqlalchemy.orm import Session

from ..config import TWILIO_AUTH_TOKEN
from ..database import get_db
from ..domain.slot_recovery.service import ACCEPTED, SLOT_TAKEN, SlotRecoveryService
from ..models import Customer
from ..models_twilio import MessageOptOut
from ..webhook_security import WebhookSignatureError, verify_twilio_request

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks/twilio", tags=["webhooks"])

STOP_KEYWORDS = ("STOP", "STOPALL", "UNSUBSCRIBE", "CANCEL", "END", "QUIT")
START_KEYWORDS = ("START", "UNSTOP")
ACCEPT_KEYWORDS = ("YES",)

XML_ENTITIES = {'"': "&quot;", "'": "&apos;"}


def normalize_keyword(body: str) -> str:
    return "".join(body.upper().split())


def matches(normalized: str, keywords: tuple) -> bool:
    return any(normalized.startswith(keyword) for keyword in keywords)


def twiml_response(message: Optional[str] = None, status_code: int = 200) -> Response:
    if message:
        content = (
            '<?xml version="1.0" encoding="UTF-8"?>'
            f"<Response><Message>{escape(message, XML_ENTITIES)}</Message></Response>"
        )
    else:
        content = '<?xml version="1.0" encoding="UTF-8"?><Response />'
    return Response(content=content, status_code=status_code, media_type="text/xml")


def set_sms_opt_in(db: Session, phone: str, opted_in: bool, keyword: str) -> int:
    customers = db.query(Customer).filter(Customer.phone == phone).all()
    for customer in customers:
        customer.sms_opt_in = opted_in
        if not opted_in:
            db.add(MessageOptOut(customer_id=customer.id, channel="sms", reason=keyword))
    db.commit()
    return len(customers)


@router.post("/inbound")
async def handle_inbound_sms(request: Request, db: Session = Depends(get_db)):
    try:
        params = await verify_twilio_request(request, TWILIO_AUTH_TOKEN)
    except WebhookSignatureError as e:
        logger.warning(f"🚫 Rejected inbound SMS: {e}")
        return twiml_response(status_code=403)

    from_phone = params.get("From", "").strip()
    body = params.get("Body", "").strip()
    if not from_phone or not body:
        return twiml_response()

    normalized = normalize_keyword(body)
    logger.info(f"📥 Inbound SMS from {from_phone}: {normalized[:20]}")

    if matches(normalized, STOP_KEYWORDS):
        set_sms_opt_in(db, from_phone, False, normalized)
        logger.info(f"🔕 {from_phone} opted out")
        return twiml_response("You are opted out. Reply START to re-subscribe.")

    if matches(normalized, START_KEYWORDS):
        set_sms_opt_in(db, from_phone, True, normalized)
        logger.info(f"🔔 {from_phone} opted in")
        return twiml_response("You are opted in.")

    if matches(normalized, ACCEPT_KEYWORDS):
        service = SlotRecoveryService(db)
        offer = service.find_latest_open_offer(from_phone)
        if not offer:
            return twiml_response("No active offer found.")

        try:
            result = await service.accept_offer(offer.id)
        except Exception as e:
            db.rollback()
            logger.error(f"❌ Offer acceptance failed for offer {offer.id}: {str(e)}")
            return twiml_response("Sorry, we couldn't book that slot. Please try again.")

        if result.status == ACCEPTED:
            return twiml_response("You got it! Check your messages for the payment link.")
        if result.status == SLOT_TAKEN:
            return twiml_response("Sorry, that slot was just taken.")
        return twiml_response("Sorry, that slot is no longer available.")

    return twiml_response("Reply STOP to opt out.")
