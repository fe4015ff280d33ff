"""
Redis-backed slot locks and offer cooldowns.

Locks are advisory: every protected write is also guarded by a conditional
update on the expected prior status, so an expired lock only turns into a
reported lost race.
"""

import logging
from datetime import datetime
from redis.exceptions import LockError

from .config import OFFER_COOLDOWN_SECONDS, SLOT_LOCK_TTL_SECONDS
from .redis_client import get_redis_client

logger = logging.getLogger(__name__)


def slot_lock_key(shop_id: int, starts_at: datetime) -> str:
    return f"slot_lock:{shop_id}:{starts_at.isoformat()}"


def cooldown_key(customer_id: int) -> str:
    return f"offer_cooldown:{customer_id}"


def acquire_slot_lock(shop_id: int, starts_at: datetime, ttl_seconds: int = SLOT_LOCK_TTL_SECONDS):
    """
    Try once to take the lock for a (shop, start time) slot.

    Returns the held redis Lock, or None if someone else holds it.
    """
    key = slot_lock_key(shop_id, starts_at)
    lock = get_redis_client().lock(key, timeout=ttl_seconds, blocking=False)
    if lock.acquire():
        logger.info(f"🔒 Acquired {key}")
        return lock
    logger.info(f"🔒 {key} already held")
    return None


def release_slot_lock(lock) -> None:
    """Release a lock taken by acquire_slot_lock; the token check makes an expired lock a no-op"""
    if lock is None:
        return
    try:
        lock.release()
    except LockError:
        logger.warning(f"⚠️ Slot lock {lock.name} expired before release")


def set_cooldown(customer_id: int, ttl_seconds: int = OFFER_COOLDOWN_SECONDS) -> None:
    get_redis_client().set(cooldown_key(customer_id), "1", ex=ttl_seconds)


def customers_in_cooldown(customer_ids: list[int]) -> set[int]:
    if not customer_ids:
        return set()
    client = get_redis_client()
    pipe = client.pipeline()
    for customer_id in customer_ids:
        pipe.exists(cooldown_key(customer_id))
    results = pipe.execute()
    return {customer_id for customer_id, hit in zip(customer_ids, results) if hit}

