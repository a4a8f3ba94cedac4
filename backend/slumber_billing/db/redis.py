"""Redis client for distributed per-user locks"""
import logging
from contextlib import contextmanager

import redis
from redis.exceptions import LockError

from slumber_billing.core.config import settings
from slumber_billing.core.errors import ReconcileBusy

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None

LOCK_POLL_INTERVAL = 0.05  # seconds between lock attempts


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


def reconcile_lock_key(user_id: str) -> str:
    return f"reconcile_lock:{user_id}"


@contextmanager
def user_lock(user_id: str, wait: float = None, timeout: int = None):
    """Serialize reconciliation for one user.

    Waits at most ``wait`` seconds for the lock and raises ReconcileBusy
    otherwise. Locks are per user, so different users never contend.
    Release is token-checked inside Redis, so a holder whose lock expired
    cannot release someone else's.
    """
    wait = settings.RECONCILE_LOCK_WAIT if wait is None else wait
    timeout = settings.RECONCILE_LOCK_TIMEOUT if timeout is None else timeout
    lock = get_redis_client().lock(
        reconcile_lock_key(user_id),
        timeout=timeout,
        sleep=LOCK_POLL_INTERVAL,
        blocking_timeout=wait,
    )

    if not lock.acquire():
        logger.warning(f"Timed out after {wait}s waiting for reconcile lock of user {user_id}")
        raise ReconcileBusy(user_id)

    try:
        yield
    finally:
        try:
            lock.release()
        except LockError as e:
            logger.warning(f"Reconcile lock of user {user_id} expired before release: {e}")
