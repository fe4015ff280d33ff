"""
Policy snapshots.

The live ShopPolicy is copied into an immutable PolicyVersion when a booking
is created. Everything after booking (refund eligibility, resolution) reads the
snapshot, never the live row.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import event
from sqlalchemy.orm import Session

from ...models import PolicyVersion, ShopPolicy

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"
DEFAULT_PAYMENT_MODE = "deposit"
DEFAULT_DEPOSIT_AMOUNT_CENTS = 2000
DEFAULT_CANCEL_CUTOFF_MINUTES = 1440
DEFAULT_REFUND_BEFORE_CUTOFF = True
DEFAULT_RESOLUTION_GRACE_MINUTES = 30

PAYMENT_MODES = ("deposit", "full_prepay", "none")


class PolicyVersionImmutableError(Exception):
    """Raised when code tries to modify a stored policy snapshot"""

    pass


@event.listens_for(PolicyVersion, "before_update")
def reject_policy_version_update(_mapper, _connection, target):
    raise PolicyVersionImmutableError(f"PolicyVersion {target.id} is immutable")


@dataclass(frozen=True)
class TierPricing:
    payment_mode: str
    deposit_amount_cents: Optional[int]
    applied_tier: str
    tier_override_applied: bool


def apply_tier_pricing_override(
    tier: Optional[str], policy: Optional[ShopPolicy]
) -> TierPricing:
    """Adjust the base payment mode and deposit for the customer's reliability tier"""
    payment_mode = policy.payment_mode if policy else DEFAULT_PAYMENT_MODE
    deposit = policy.deposit_amount_cents if policy else DEFAULT_DEPOSIT_AMOUNT_CENTS
    applied = False

    if policy is not None:
        if tier == "risk" and policy.risk_deposit_amount_cents is not None:
            deposit = policy.risk_deposit_amount_cents
            applied = True
            if policy.risk_payment_mode is not None:
                payment_mode = policy.risk_payment_mode
        elif tier == "top" and policy.top_deposit_waived:
            deposit = 0
            applied = True
        elif tier == "top" and policy.top_deposit_amount_cents is not None:
            deposit = policy.top_deposit_amount_cents
            applied = True

    return TierPricing(
        payment_mode=payment_mode,
        deposit_amount_cents=deposit,
        applied_tier=tier or "neutral_default",
        tier_override_applied=applied,
    )


def derive_payment_requirement(payment_mode: str, deposit_amount_cents: Optional[int]) -> tuple[bool, int]:
    """Returns (payment_required, amount_cents)"""
    if payment_mode == "none":
        return False, 0
    amount = deposit_amount_cents or 0
    if amount <= 0:
        return False, 0
    return True, amount


def snapshot_policy(
    db: Session, shop_id: int, tier: Optional[str] = None
) -> tuple[PolicyVersion, TierPricing]:
    """Copy the shop's current policy, with tier pricing applied, into a new PolicyVersion"""
    policy = db.query(ShopPolicy).filter(ShopPolicy.shop_id == shop_id).first()
    pricing = apply_tier_pricing_override(tier, policy)

    version = PolicyVersion(
        shop_id=shop_id,
        currency=policy.currency if policy else DEFAULT_CURRENCY,
        payment_mode=pricing.payment_mode,
        deposit_amount_cents=pricing.deposit_amount_cents,
        cancel_cutoff_minutes=(
            policy.cancel_cutoff_minutes if policy else DEFAULT_CANCEL_CUTOFF_MINUTES
        ),
        refund_before_cutoff=(
            policy.refund_before_cutoff if policy else DEFAULT_REFUND_BEFORE_CUTOFF
        ),
    )
    db.add(version)
    db.flush()

    if pricing.tier_override_applied:
        logger.info(
            f"💰 Tier pricing applied for shop {shop_id}: tier={pricing.applied_tier}, "
            f"deposit={pricing.deposit_amount_cents}"
        )
    return version, pricing


def get_policy_version(db: Session, policy_version_id: Optional[int]) -> Optional[PolicyVersion]:
    if policy_version_id is None:
        return None
    return db.query(PolicyVersion).filter(PolicyVersion.id == policy_version_id).first()
