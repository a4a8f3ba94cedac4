"""Close out scheduled cancellations whose paid period has ended.

The processor normally reports this with ``customer.subscription.deleted``.
When that event is lost the stored record keeps its subscription id and
``cancel_at_period_end`` forever, so a periodic sweep feeds the same
cancellation through the reconciler.
"""
import argparse
import asyncio
import logging
from datetime import datetime, timezone
from typing import Optional

from slumber_billing.core.config import settings
from slumber_billing.core.enums import SubscriptionStatus
from slumber_billing.core.errors import ReconcileBusy, StoreConflict
from slumber_billing.core.logging import setup_logging
from slumber_billing.db.session import SessionLocal
from slumber_billing.services import subscription_store
from slumber_billing.services.candidates import Candidate
from slumber_billing.services.reconciler import Reconciler

logger = logging.getLogger(__name__)


def expire_lapsed_subscriptions(db, reconciler: Reconciler, limit: int = 100,
                                now: Optional[datetime] = None) -> dict:
    """Cancel up to ``limit`` lapsed scheduled cancellations. Returns outcome counts."""
    now = now or datetime.now(timezone.utc)
    counts = {}
    for record in subscription_store.get_lapsed_cancellations(db, now, limit=limit):
        user_id = record.user_id
        candidate = Candidate(
            status=SubscriptionStatus.CANCELED,
            processor_customer_id=record.processor_customer_id,
            processor_subscription_id=None,
            cancel_at_period_end=False,
            canceled_at=now,
            current_period_end=record.current_period_end,
            origin="expiry",
        )
        try:
            stored = reconciler.reconcile(user_id, candidate)
        except (ReconcileBusy, StoreConflict) as e:
            # Picked up again on the next sweep
            logger.warning(f"Could not expire subscription of user {user_id}: {e}")
            counts["busy"] = counts.get("busy", 0) + 1
            continue

        outcome = "expired" if stored.processor_subscription_id is None else "kept"
        if outcome == "expired":
            logger.info(
                f"Expired subscription {record.processor_subscription_id} of user {user_id} "
                f"(period ended {stored.current_period_end})"
            )
        counts[outcome] = counts.get(outcome, 0) + 1

    if counts:
        logger.info(f"Subscription expiry finished: {counts}")
    return counts


def _expire_batch(limit: int) -> dict:
    db = SessionLocal()
    try:
        return expire_lapsed_subscriptions(db, Reconciler(db), limit=limit)
    finally:
        db.close()


async def subscription_expiry_task():
    """Background task that periodically expires lapsed scheduled cancellations"""
    while True:
        await asyncio.sleep(settings.SUBSCRIPTION_EXPIRY_INTERVAL)
        try:
            await asyncio.to_thread(_expire_batch, settings.SUBSCRIPTION_EXPIRY_BATCH)
        except Exception as e:
            logger.error(f"Error in subscription expiry task: {e}", exc_info=True)


def main():
    parser = argparse.ArgumentParser(description="Expire lapsed scheduled subscription cancellations")
    parser.add_argument("--limit", type=int, default=settings.SUBSCRIPTION_EXPIRY_BATCH)
    args = parser.parse_args()

    setup_logging()
    counts = _expire_batch(args.limit)
    print(counts)


if __name__ == "__main__":
    main()
