import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from yqpay.core.config import PAYMENT_LOCK_PREFIX, PAYMENT_LOCK_TTL_MS, PAYMENT_LOCK_WAIT_MS

logger = logging.getLogger(__name__)

# Release only if we still own the lock
RELEASE_LUA_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""

_POLL_INTERVAL_S = 0.05


def _key_for(transaction_id: str) -> str:
    p = PAYMENT_LOCK_PREFIX or ""
    if p and not p.endswith(":"):
        p = p + ":"
    return f"{p}payment_lock:{transaction_id}"


async def acquire_payment_lock(
    redis,
    transaction_id: str,
    owner: str,
    ttl_ms: int = PAYMENT_LOCK_TTL_MS,
    wait_ms: int = PAYMENT_LOCK_WAIT_MS,
) -> bool:
    """
    Try to take the processing lock for one transaction, polling up to wait_ms.
    Returns True when held. Redis errors count as "not held".
    """
    key = _key_for(transaction_id)
    deadline = time.monotonic() + wait_ms / 1000.0
    while True:
        try:
            ok = await asyncio.wait_for(redis.set(key, owner, nx=True, px=ttl_ms), timeout=1.0)
        except Exception as e:
            logger.warning("Payment lock acquire failed for %s: %s", transaction_id, e)
            return False
        if ok:
            return True
        if time.monotonic() >= deadline:
            return False
        await asyncio.sleep(_POLL_INTERVAL_S)


async def release_payment_lock(redis, transaction_id: str, owner: str) -> bool:
    try:
        released = await redis.eval(RELEASE_LUA_SCRIPT, 1, _key_for(transaction_id), owner)
        return bool(released)
    except Exception as e:
        logger.warning("Payment lock release failed for %s: %s", transaction_id, e)
        return False


@asynccontextmanager
async def payment_lock(redis, transaction_id: Optional[str]) -> AsyncIterator[bool]:
    """
    Serialize verify/webhook/reconcile work on one transaction.

    Yields whether the lock is actually held. Without Redis, or when the lock
    cannot be obtained in time, the body still runs: conditional store updates
    keep the outcome correct, the lock only narrows duplicate fan-out.
    """
    if redis is None or not transaction_id:
        yield False
        return

    owner = uuid.uuid4().hex
    held = await acquire_payment_lock(redis, transaction_id, owner)
    if not held:
        logger.info("Proceeding without payment lock for transaction %s", transaction_id)
    try:
        yield held
    finally:
        if held:
            await release_payment_lock(redis, transaction_id, owner)
