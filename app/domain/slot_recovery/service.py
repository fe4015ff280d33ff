"""
Slot Recovery Service

Turns a refunded cancellation into an open slot, offers it over SMS to the
best-ranked waiting customers, and books the first valid YES reply.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from redis.exceptions import RedisError
from sqlalchemy import and_, exists
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ... import locks
from ...config import EXPIRE_OFFERS_LOCK_ID, SLOT_OFFER_EXPIRY_MINUTES
from ...database import advisory_lock
from ...models import Appointment, Customer, CustomerScore, Payment, Shop, ShopPolicy
from ...models_slot_recovery import SlotOffer, SlotOpening
from ...services import message_log, messages
from ...services.twilio_service import NotificationError
from ..appointments.constants import (
    CANCELLED_BY_SYSTEM,
    INTENT_SUCCEEDED,
    SOURCE_SLOT_RECOVERY,
    STATUS_BOOKED,
    STATUS_CANCELLED,
    STATUS_PENDING,
)
from ..appointments.state_machine import transition
from ..bookings.service import (
    PaymentSetupError,
    SlotTakenError,
    create_appointment,
    payment_link,
    void_payment_intent,
)
from .ranking import OfferCandidate, rank_candidates

logger = logging.getLogger(__name__)

OPENING_OPEN = "open"
OPENING_FILLED = "filled"
OPENING_EXPIRED = "expired"

OFFER_SENT = "sent"
OFFER_ACCEPTED = "accepted"
OFFER_EXPIRED = "expired"
OFFER_DECLINED = "declined"

CANDIDATE_POOL_LIMIT = 50
EXPIRE_BATCH_LIMIT = 25

ACCEPTED = "accepted"
SLOT_TAKEN = "slot_taken"
SLOT_NO_LONGER_AVAILABLE = "slot_no_longer_available"


@dataclass
class AcceptResult:
    status: str
    appointment_id: Optional[int] = None
    payment_url: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status == ACCEPTED


class SlotRecoveryService:
    """Service layer for slot openings and offers"""

    def __init__(self, db: Session):
        self.db = db

    # ---- openings -------------------------------------------------------

    def create_slot_opening_from_cancellation(self, appointment_id: int) -> Optional[SlotOpening]:
        """
        Open the slot freed by a paid cancellation. Only future slots whose
        deposit was captured qualify; a duplicate opening is ignored.
        """
        row = (
            self.db.query(Appointment, Payment)
            .outerjoin(Payment, Payment.appointment_id == Appointment.id)
            .filter(Appointment.id == appointment_id)
            .first()
        )
        if not row:
            logger.warning(f"⚠️ Appointment {appointment_id} not found for slot opening")
            return None

        appointment, payment = row
        if not payment or payment.status != INTENT_SUCCEEDED:
            logger.info(f"⏭️ Appointment {appointment_id} had no captured payment, no slot opening")
            return None
        if appointment.starts_at <= datetime.utcnow():
            logger.info(f"⏭️ Appointment {appointment_id} is in the past, no slot opening")
            return None

        opening = SlotOpening(
            shop_id=appointment.shop_id,
            source_appointment_id=appointment.id,
            starts_at=appointment.starts_at,
            ends_at=appointment.ends_at,
            status=OPENING_OPEN,
        )
        self.db.add(opening)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.info(
                f"⏭️ Slot opening already exists for shop {appointment.shop_id} "
                f"at {appointment.starts_at.isoformat()}"
            )
            return None

        self.db.refresh(opening)
        logger.info(f"✅ Slot opening {opening.id} created from appointment {appointment_id}")
        return opening

    def get_opening(self, slot_opening_id: int) -> Optional[SlotOpening]:
        return self.db.query(SlotOpening).filter(SlotOpening.id == slot_opening_id).first()

    # ---- candidates -----------------------------------------------------

    def get_eligible_customers(self, opening: SlotOpening) -> list[OfferCandidate]:
        """Ranked customers who may receive an offer for this opening"""
        already_offered = exists().where(
            and_(SlotOffer.slot_opening_id == opening.id, SlotOffer.customer_id == Customer.id)
        )
        overlapping_booking = exists().where(
            and_(
                Appointment.customer_id == Customer.id,
                Appointment.status.in_([STATUS_BOOKED, STATUS_PENDING]),
                Appointment.starts_at < opening.ends_at,
                Appointment.ends_at > opening.starts_at,
            )
        )

        rows = (
            self.db.query(
                Customer.id,
                Customer.phone,
                Customer.full_name,
                CustomerScore.tier,
                CustomerScore.score,
                CustomerScore.computed_at,
            )
            .outerjoin(
                CustomerScore,
                and_(
                    CustomerScore.customer_id == Customer.id,
                    CustomerScore.shop_id == opening.shop_id,
                ),
            )
            .filter(
                Customer.shop_id == opening.shop_id,
                Customer.sms_opt_in.is_(True),
                Customer.phone.isnot(None),
                Customer.phone != "",
                ~already_offered,
                ~overlapping_booking,
            )
            .all()
        )

        policy = self.db.query(ShopPolicy).filter(ShopPolicy.shop_id == opening.shop_id).first()
        exclude_risk = bool(policy and policy.exclude_risk_from_offers)

        ranked = rank_candidates(
            (
                OfferCandidate(
                    customer_id=row[0],
                    phone=row[1],
                    full_name=row[2],
                    tier=row[3],
                    score=row[4],
                    computed_at=row[5],
                )
                for row in rows
            ),
            exclude_risk=exclude_risk,
        )[:CANDIDATE_POOL_LIMIT]

        try:
            cooling_down = locks.customers_in_cooldown([c.customer_id for c in ranked])
        except RedisError as e:
            logger.warning(f"⚠️ Cooldown lookup failed ({e}), offering without cooldown filter")
            cooling_down = set()
        return [c for c in ranked if c.customer_id not in cooling_down]

    # ---- offers ---------------------------------------------------------

    async def send_offer(self, opening: SlotOpening, candidate: OfferCandidate) -> Optional[SlotOffer]:
        """SMS first, then record the offer. A send failure records nothing."""
        shop = self.db.query(Shop).filter(Shop.id == opening.shop_id).first()
        body = messages.slot_offer_message(opening.starts_at, shop.timezone if shop else "UTC")

        await message_log.send_logged_sms(
            self.db,
            shop_id=opening.shop_id,
            customer_id=candidate.customer_id,
            to_phone=candidate.phone,
            body=body,
            purpose=message_log.PURPOSE_SLOT_OFFER,
        )

        now = datetime.utcnow()
        offer = SlotOffer(
            slot_opening_id=opening.id,
            customer_id=candidate.customer_id,
            channel="sms",
            status=OFFER_SENT,
            sent_at=now,
            expires_at=now + timedelta(minutes=SLOT_OFFER_EXPIRY_MINUTES),
        )
        self.db.add(offer)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning(
                f"⚠️ Customer {candidate.customer_id} already has an offer for opening {opening.id}"
            )
            return None

        self.db.refresh(offer)
        logger.info(f"📱 Offer {offer.id} sent to customer {candidate.customer_id} for opening {opening.id}")
        return offer

    def find_latest_open_offer(self, phone: str) -> Optional[SlotOffer]:
        """Newest unexpired offer still waiting for a reply from this number"""
        return (
            self.db.query(SlotOffer)
            .join(Customer, Customer.id == SlotOffer.customer_id)
            .join(SlotOpening, SlotOpening.id == SlotOffer.slot_opening_id)
            .filter(
                Customer.phone == phone,
                SlotOffer.status == OFFER_SENT,
                SlotOpening.status == OPENING_OPEN,
                SlotOffer.expires_at > datetime.utcnow(),
            )
            .order_by(SlotOffer.sent_at.desc(), SlotOffer.id.desc())
            .first()
        )

    async def accept_offer(self, offer_id: int) -> AcceptResult:
        """
        Book the slot for the customer who replied YES.

        The redis slot lock keeps concurrent replies from booking at once; the
        conditional status flips decide the winner if the lock ever lapses.
        """
        offer = self.db.query(SlotOffer).filter(SlotOffer.id == offer_id).first()
        if not offer:
            return AcceptResult(SLOT_NO_LONGER_AVAILABLE)
        opening = self.get_opening(offer.slot_opening_id)
        if not opening:
            logger.warning(f"⚠️ Offer {offer_id} points at missing opening {offer.slot_opening_id}")
            return AcceptResult(SLOT_NO_LONGER_AVAILABLE)
        shop_id, starts_at, ends_at = opening.shop_id, opening.starts_at, opening.ends_at
        opening_id, customer_id = opening.id, offer.customer_id

        try:
            lock = locks.acquire_slot_lock(shop_id, starts_at)
            if lock is None:
                logger.info(f"🔒 Offer {offer_id} lost the lock for opening {opening_id}")
                return AcceptResult(SLOT_TAKEN)
        except RedisError as e:
            logger.warning(f"⚠️ Slot lock unavailable ({e}), relying on conditional writes")
            lock = None

        try:
            # Re-read under the lock
            self.db.expire_all()
            fresh_opening = self.get_opening(opening_id)
            fresh_offer = self.db.query(SlotOffer).filter(SlotOffer.id == offer_id).first()
            if (
                fresh_opening is None
                or fresh_offer is None
                or fresh_opening.status != OPENING_OPEN
                or fresh_offer.status != OFFER_SENT
            ):
                logger.info(f"⏭️ Offer {offer_id} no longer available")
                return AcceptResult(SLOT_NO_LONGER_AVAILABLE)

            # Synchronous Stripe call; bounded by stripe_service.worst_case_call_seconds(), under the lock TTL
            try:
                booking = create_appointment(
                    self.db,
                    shop_id=shop_id,
                    customer_id=customer_id,
                    starts_at=starts_at,
                    ends_at=ends_at,
                    source=SOURCE_SLOT_RECOVERY,
                    source_slot_opening_id=opening_id,
                )
            except SlotTakenError:
                return AcceptResult(SLOT_TAKEN)
            except PaymentSetupError:
                return AcceptResult(SLOT_NO_LONGER_AVAILABLE)

            appointment_id = booking.appointment.id
            appointment_status = booking.appointment.status
            intent_id = booking.payment.stripe_payment_intent_id if booking.payment else None
            now = datetime.utcnow()
            filled = (
                self.db.query(SlotOpening)
                .filter(SlotOpening.id == opening_id, SlotOpening.status == OPENING_OPEN)
                .update({"status": OPENING_FILLED, "updated_at": now}, synchronize_session=False)
            )
            accepted = 0
            if filled == 1:
                accepted = (
                    self.db.query(SlotOffer)
                    .filter(SlotOffer.id == offer_id, SlotOffer.status == OFFER_SENT)
                    .update(
                        {"status": OFFER_ACCEPTED, "accepted_at": now, "updated_at": now},
                        synchronize_session=False,
                    )
                )

            if filled != 1 or accepted != 1:
                self.db.rollback()
                self._release_lost_booking(appointment_id, appointment_status, intent_id)
                logger.warning(f"⚠️ Offer {offer_id} lost the race for opening {opening_id}")
                return AcceptResult(SLOT_NO_LONGER_AVAILABLE)

            self.db.commit()
            logger.info(f"✅ Offer {offer_id} accepted, appointment {appointment_id} booked")

            url = payment_link(appointment_id)
            customer = self.db.query(Customer).filter(Customer.id == customer_id).first()
            try:
                await message_log.send_logged_sms(
                    self.db,
                    shop_id=shop_id,
                    customer_id=customer_id,
                    to_phone=customer.phone,
                    body=messages.offer_accepted_message(url),
                    purpose=message_log.PURPOSE_OFFER_ACCEPTED,
                    appointment_id=appointment_id,
                )
            except NotificationError as e:
                logger.error(f"❌ Confirmation SMS failed for appointment {appointment_id}: {e}")

            try:
                locks.set_cooldown(customer_id)
            except RedisError as e:
                logger.error(f"❌ Could not set offer cooldown for customer {customer_id}: {e}")
            return AcceptResult(ACCEPTED, appointment_id=appointment_id, payment_url=url)
        finally:
            locks.release_slot_lock(lock)

    def _release_lost_booking(self, appointment_id: int, status: str, intent_id: Optional[str]) -> None:
        """Cancel an appointment created for a slot that someone else filled first"""
        released = transition(
            self.db,
            appointment_id,
            expected_status=status,
            expected_outcome=None,
            values={
                "status": STATUS_CANCELLED,
                "cancelled_at": datetime.utcnow(),
                "cancellation_source": CANCELLED_BY_SYSTEM,
            },
        )
        self.db.commit()
        if released:
            logger.info(f"↩️ Released appointment {appointment_id} after lost slot race")
            void_payment_intent(appointment_id, intent_id)

    # ---- offer loop & expiry -------------------------------------------

    async def run_offer_loop(self, slot_opening_id: int) -> dict:
        """Send the next offer for an opening, or expire it when nobody is left"""
        opening = self.get_opening(slot_opening_id)
        if not opening:
            return {"status": "not_found", "slotOpeningId": slot_opening_id}
        if opening.status != OPENING_OPEN:
            logger.info(f"⏭️ Opening {slot_opening_id} is {opening.status}, no offers sent")
            return {"status": "skipped", "reason": f"opening {opening.status}"}

        candidates = self.get_eligible_customers(opening)
        if not candidates:
            self.db.query(SlotOpening).filter(
                SlotOpening.id == slot_opening_id, SlotOpening.status == OPENING_OPEN
            ).update(
                {"status": OPENING_EXPIRED, "updated_at": datetime.utcnow()},
                synchronize_session=False,
            )
            self.db.commit()
            logger.info(f"⌛ No eligible customers for opening {slot_opening_id}, marked expired")
            return {"status": "expired", "slotOpeningId": slot_opening_id}

        for candidate in candidates:
            try:
                offer = await self.send_offer(opening, candidate)
            except NotificationError as e:
                logger.error(f"❌ Offer SMS to customer {candidate.customer_id} failed: {e}")
                continue
            if offer:
                return {"status": "sent", "slotOpeningId": slot_opening_id, "offerId": offer.id}

        return {"status": "failed", "slotOpeningId": slot_opening_id}

    async def expire_offers(self, lock_id: int = EXPIRE_OFFERS_LOCK_ID) -> dict:
        """Expire unanswered offers and move each affected opening to its next candidate"""
        with advisory_lock(self.db, lock_id) as acquired:
            if not acquired:
                logger.info(f"🔒 Offer expiry already running (lock {lock_id}), skipping")
                return {"skipped": True, "reason": "locked"}

            now = datetime.utcnow()
            expired_offers = (
                self.db.query(SlotOffer.id, SlotOffer.slot_opening_id)
                .join(SlotOpening, SlotOpening.id == SlotOffer.slot_opening_id)
                .filter(
                    SlotOffer.status == OFFER_SENT,
                    SlotOffer.expires_at <= now,
                    SlotOpening.status == OPENING_OPEN,
                )
                .order_by(SlotOffer.expires_at.asc(), SlotOffer.id.asc())
                .limit(EXPIRE_BATCH_LIMIT)
                .all()
            )

            summary = {"total": len(expired_offers), "expired": 0, "triggered": 0, "errors": []}
            for offer_id, opening_id in expired_offers:
                try:
                    updated = (
                        self.db.query(SlotOffer)
                        .filter(SlotOffer.id == offer_id, SlotOffer.status == OFFER_SENT)
                        .update(
                            {"status": OFFER_EXPIRED, "updated_at": datetime.utcnow()},
                            synchronize_session=False,
                        )
                    )
                    self.db.commit()
                    if updated != 1:
                        continue
                    summary["expired"] += 1

                    result = await self.run_offer_loop(opening_id)
                    if result.get("status") in ("sent", "expired"):
                        summary["triggered"] += 1
                except Exception as e:
                    self.db.rollback()
                    logger.error(f"❌ Failed to expire offer {offer_id}: {e}")
                    summary["errors"].append({"offerId": offer_id, "error": str(e)})

            logger.info(
                f"✅ Offer expiry finished: expired={summary['expired']}, "
                f"triggered={summary['triggered']}, errors={len(summary['errors'])}"
            )
            return summary

    # ---- payment failures ----------------------------------------------

    def reopen_after_failed_payment(self, appointment: Appointment) -> bool:
        """
        Put a recovered slot back on offer when its new booking never got paid.
        Runs inside the caller's transaction.
        """
        if appointment.source != SOURCE_SLOT_RECOVERY or not appointment.source_slot_opening_id:
            return False

        reopened = (
            self.db.query(SlotOpening)
            .filter(
                SlotOpening.id == appointment.source_slot_opening_id,
                SlotOpening.status == OPENING_FILLED,
            )
            .update({"status": OPENING_OPEN, "updated_at": datetime.utcnow()}, synchronize_session=False)
        )
        self.db.query(SlotOffer).filter(
            SlotOffer.slot_opening_id == appointment.source_slot_opening_id,
            SlotOffer.customer_id == appointment.customer_id,
            SlotOffer.status.in_([OFFER_SENT, OFFER_ACCEPTED]),
        ).update({"status": OFFER_DECLINED, "updated_at": datetime.utcnow()}, synchronize_session=False)

        if reopened:
            logger.info(
                f"↩️ Slot opening {appointment.source_slot_opening_id} reopened after failed payment "
                f"for appointment {appointment.id}"
            )
        return bool(reopened)
