"""
Fire-and-forget job triggers
Enqueue failures are logged and never propagate to the caller
"""

import logging

from arq import create_pool

from ..worker import get_redis_settings

logger = logging.getLogger(__name__)


async def enqueue_job(function_name: str, *args) -> bool:
    try:
        pool = await create_pool(get_redis_settings())
        try:
            job = await pool.enqueue_job(function_name, *args)
        finally:
            await pool.close()
    except Exception as e:
        logger.error(f"❌ Failed to enqueue {function_name}{args}: {e}")
        return False

    logger.info(f"📤 Enqueued {function_name}{args} (job {job.job_id if job else 'duplicate'})")
    return True


async def trigger_offer_loop(slot_opening_id: int) -> bool:
    """Start the next offer round for an opening in the worker"""
    return await enqueue_job("dispatch_slot_offers_task", slot_opening_id)
