"""Reconciler - the single write path into the Subscription Store.

Webhook ingest, checkout verification and the polling fallback all hand their
candidates to ``Reconciler.reconcile``; nothing else writes subscription rows.
The read-decide-write sequence for a user runs under a per-user Redis lock and
commits with a compare-and-swap on the row version, so concurrent paths for the
same user cannot interleave and different users never contend.
"""
import logging
from typing import Callable, ContextManager, Optional

from opentelemetry import trace
from sqlalchemy.orm import Session

from slumber_billing.core.config import settings
from slumber_billing.core.errors import StoreConflict
from slumber_billing.core.metrics import reconcile_counter
from slumber_billing.db.redis import user_lock
from slumber_billing.models.subscription import SubscriptionRecord
from slumber_billing.services import status_authority, subscription_store
from slumber_billing.services.candidates import Candidate

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

LockFactory = Callable[[str], ContextManager]


class Reconciler:
    def __init__(
        self,
        db: Session,
        lock_factory: Optional[LockFactory] = None,
        max_conflicts: Optional[int] = None,
    ):
        self.db = db
        self.lock_factory = lock_factory or user_lock
        self.max_conflicts = max_conflicts or settings.RECONCILE_MAX_CONFLICTS

    def reconcile(self, user_id: str, candidate: Candidate) -> SubscriptionRecord:
        """Merge ``candidate`` into the stored record for ``user_id``.

        Returns the stored record after the decision: the updated row when the
        candidate won, the untouched row otherwise. Replaying a candidate never
        regresses state.

        Raises:
            ReconcileBusy: per-user lock not obtained within the bounded wait
            StoreConflict: conditional write lost repeatedly to other writers
        """
        with tracer.start_as_current_span("reconcile") as span:
            span.set_attribute("billing.user_id", user_id)
            span.set_attribute("billing.origin", candidate.origin)
            with self.lock_factory(user_id):
                return self._reconcile_locked(user_id, candidate)

    def _reconcile_locked(self, user_id: str, candidate: Candidate) -> SubscriptionRecord:
        for attempt in range(1, self.max_conflicts + 1):
            self.db.expire_all()
            current = subscription_store.get_record(self.db, user_id)

            if self._customer_conflict(current, candidate):
                logger.error(
                    f"Rejected candidate for user {user_id} from {candidate.origin}: customer "
                    f"{candidate.processor_customer_id} does not match linked customer "
                    f"{current.processor_customer_id} (subscription {candidate.processor_subscription_id})"
                )
                reconcile_counter.labels(source=candidate.origin, outcome="customer_mismatch").inc()
                return current

            if not status_authority.candidate_wins(current, candidate):
                logger.info(
                    f"Kept stored state for user {user_id}: {current.status} "
                    f"(period end {current.current_period_end}) outranks {candidate.status.value} "
                    f"from {candidate.origin}"
                )
                reconcile_counter.labels(source=candidate.origin, outcome="kept").inc()
                return current

            values = self._merged_values(current, candidate)
            if current is None:
                stored = subscription_store.insert_record(self.db, user_id, values)
                if stored is not None:
                    self._log_applied(user_id, candidate, stored)
                    return stored
            elif subscription_store.conditional_update(self.db, user_id, current.version, values):
                stored = subscription_store.get_record(self.db, user_id)
                self._log_applied(user_id, candidate, stored)
                return stored

            logger.warning(
                f"Write conflict reconciling user {user_id} from {candidate.origin} "
                f"(attempt {attempt}/{self.max_conflicts}), re-reading"
            )
            reconcile_counter.labels(source=candidate.origin, outcome="conflict").inc()

        raise StoreConflict(user_id, self.max_conflicts)

    @staticmethod
    def _customer_conflict(current: Optional[SubscriptionRecord], candidate: Candidate) -> bool:
        return bool(
            current is not None
            and current.processor_customer_id
            and candidate.processor_customer_id
            and current.processor_customer_id != candidate.processor_customer_id
        )

    @staticmethod
    def _merged_values(current: Optional[SubscriptionRecord], candidate: Candidate) -> dict:
        customer_id = candidate.processor_customer_id
        portal_url = candidate.management_portal_url
        if current is not None:
            # Customer identity is set once; portal link survives candidates that lack one
            customer_id = current.processor_customer_id or customer_id
            portal_url = portal_url or current.management_portal_url
        return {
            "processor_customer_id": customer_id,
            "processor_subscription_id": candidate.processor_subscription_id,
            "status": candidate.status.value,
            "cancel_at_period_end": candidate.cancel_at_period_end,
            "canceled_at": candidate.canceled_at,
            "current_period_end": candidate.current_period_end,
            "management_portal_url": portal_url,
            "candidate_source": candidate.candidate_source.value,
        }

    @staticmethod
    def _log_applied(user_id: str, candidate: Candidate, stored: SubscriptionRecord) -> None:
        logger.info(
            f"Applied {candidate.status.value} from {candidate.origin} for user {user_id} "
            f"(customer {stored.processor_customer_id}, subscription {stored.processor_subscription_id}, "
            f"effective {stored.effective_status}, version {stored.version})"
        )
        reconcile_counter.labels(source=candidate.origin, outcome="applied").inc()
