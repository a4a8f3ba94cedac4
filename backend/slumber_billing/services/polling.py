"""Polling Fallback - ask the processor directly when push and verify are inconclusive"""
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from slumber_billing.core.errors import ProcessorRequestError, ProcessorUnavailable
from slumber_billing.core.logging import billing_logger
from slumber_billing.core.metrics import polling_counter
from slumber_billing.models.subscription import SubscriptionRecord
from slumber_billing.services import subscription_store
from slumber_billing.services.candidates import best_subscription, candidate_from_subscription
from slumber_billing.services.processor_client import ProcessorClient
from slumber_billing.services.reconciler import Reconciler

logger = billing_logger


@dataclass
class PollResult:
    available: bool
    reason: Optional[str] = None
    record: Optional[SubscriptionRecord] = None


class PollingFallback:
    """One poll per call; the caller owns the backoff between polls."""

    def __init__(self, db: Session, processor: ProcessorClient, reconciler: Optional[Reconciler] = None):
        self.db = db
        self.processor = processor.without_retries()
        self.reconciler = reconciler or Reconciler(db)

    def poll(self, user_id: str) -> PollResult:
        record = subscription_store.get_record(self.db, user_id)
        if record is None or not record.processor_customer_id:
            polling_counter.labels(outcome="customer_unknown").inc()
            return PollResult(available=False, reason="customer_unknown", record=record)

        customer_id = record.processor_customer_id
        try:
            subscriptions = self.processor.list_subscriptions(customer_id)
        except ProcessorUnavailable as e:
            logger.warning(f"Polling for user {user_id} (customer {customer_id}) unavailable: {e}")
            polling_counter.labels(outcome="processor_unavailable").inc()
            return PollResult(available=False, reason="processor_unavailable", record=record)
        except ProcessorRequestError as e:
            logger.error(f"Polling for user {user_id} (customer {customer_id}) rejected: {e}")
            polling_counter.labels(outcome="processor_rejected").inc()
            return PollResult(available=False, reason="processor_rejected", record=record)

        subscription = best_subscription(subscriptions)
        if subscription is None:
            polling_counter.labels(outcome="no_subscription").inc()
            return PollResult(available=False, reason="no_subscription", record=record)

        candidate = candidate_from_subscription(subscription, "poll", customer_id=customer_id)
        stored = self.reconciler.reconcile(user_id, candidate)
        polling_counter.labels(outcome="reconciled").inc()
        return PollResult(available=True, record=stored)
