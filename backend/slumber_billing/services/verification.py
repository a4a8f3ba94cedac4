"""Verification Client - confirm a checkout right after payment.

The client presents one or more identifiers; each becomes a strategy and the
strategies are tried in a fixed order (checkout session, customer pair, bare
subscription). A transient processor failure moves on to the next strategy.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Iterable, List, Optional, Union

from sqlalchemy.orm import Session

from slumber_billing.core.errors import (
    OwnershipMismatch, ProcessorRequestError, ProcessorUnavailable,
)
from slumber_billing.core.logging import billing_logger
from slumber_billing.core.metrics import verification_counter
from slumber_billing.models.subscription import SubscriptionRecord
from slumber_billing.services import status_authority, subscription_store
from slumber_billing.services.candidates import (
    best_subscription, candidate_from_session, candidate_from_subscription,
    get_value, object_id,
)
from slumber_billing.services.processor_client import ProcessorClient
from slumber_billing.services.reconciler import Reconciler

logger = billing_logger


@dataclass(frozen=True)
class CheckoutStrategy:
    checkout_reference: str
    name: ClassVar[str] = "checkout"


@dataclass(frozen=True)
class CustomerStrategy:
    user_id: str
    processor_customer_id: str
    name: ClassVar[str] = "customer"


@dataclass(frozen=True)
class SubscriptionStrategy:
    subscription_reference: str
    name: ClassVar[str] = "subscription"


Strategy = Union[CheckoutStrategy, CustomerStrategy, SubscriptionStrategy]

STRATEGY_ORDER = (CheckoutStrategy, CustomerStrategy, SubscriptionStrategy)


@dataclass
class VerificationResult:
    success: bool
    status: str
    payment_failed: bool = False
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    error: Optional[str] = None
    strategy: Optional[str] = None


def ordered_strategies(strategies: Iterable[Strategy]) -> List[Strategy]:
    return sorted(strategies, key=lambda s: STRATEGY_ORDER.index(type(s)))


class VerificationClient:
    def __init__(self, db: Session, processor: ProcessorClient, reconciler: Optional[Reconciler] = None):
        self.db = db
        # Each strategy gets one attempt; a timeout moves on to the next strategy
        self.processor = processor.without_retries()
        self.reconciler = reconciler or Reconciler(db)

    def verify(self, user_id: str, strategies: Iterable[Strategy]) -> VerificationResult:
        """Verify the caller's checkout using the first strategy that gets an answer.

        Raises:
            ValueError: no strategy given
            OwnershipMismatch: an identifier belongs to a different user
            ReconcileBusy / StoreConflict: the user's record is being written elsewhere
        """
        ordered = ordered_strategies(strategies)
        if not ordered:
            raise ValueError("At least one verification identifier is required")

        errors = []
        for strategy in ordered:
            try:
                result = self._run(user_id, strategy)
            except ProcessorUnavailable as e:
                logger.warning(f"Verification via {strategy.name} for user {user_id} unavailable: {e}")
                verification_counter.labels(strategy=strategy.name, outcome="unavailable").inc()
                errors.append(str(e))
                continue
            except ProcessorRequestError as e:
                logger.warning(f"Verification via {strategy.name} for user {user_id} rejected: {e}")
                verification_counter.labels(strategy=strategy.name, outcome="rejected").inc()
                errors.append(str(e))
                continue
            except OwnershipMismatch as e:
                logger.error(f"Verification via {strategy.name} refused for user {user_id}: {e}")
                verification_counter.labels(strategy=strategy.name, outcome="ownership_mismatch").inc()
                raise

            result.strategy = strategy.name
            outcome = "payment_failed" if result.payment_failed else ("success" if result.success else "pending")
            verification_counter.labels(strategy=strategy.name, outcome=outcome).inc()
            logger.info(
                f"Verified user {user_id} via {strategy.name}: status={result.status} "
                f"success={result.success} payment_failed={result.payment_failed}"
            )
            return result

        # Every strategy failed; report what is stored now
        logger.error(f"All verification strategies failed for user {user_id}: {errors}")
        return self._result(
            subscription_store.get_record(self.db, user_id),
            error="; ".join(errors) or "Verification failed",
        )

    def _run(self, user_id: str, strategy: Strategy) -> VerificationResult:
        if isinstance(strategy, CheckoutStrategy):
            return self._verify_checkout(user_id, strategy.checkout_reference)
        if isinstance(strategy, CustomerStrategy):
            return self._verify_customer(user_id, strategy)
        if isinstance(strategy, SubscriptionStrategy):
            return self._verify_subscription(user_id, strategy.subscription_reference)
        raise TypeError(f"Unknown verification strategy {strategy!r}")

    # ------------------------------------------------------------------
    # Strategies
    # ------------------------------------------------------------------

    def _verify_checkout(self, user_id: str, session_id: str) -> VerificationResult:
        session = self.processor.retrieve_checkout_session(session_id)
        customer_id = object_id(get_value(session, "customer"))
        self._check_owner(user_id, customer_id, session)

        subscription = get_value(session, "subscription")
        if isinstance(subscription, str):
            subscription = self.processor.retrieve_subscription(subscription)

        if get_value(session, "status") == "expired" or get_value(subscription, "status") == "incomplete_expired":
            logger.info(f"Checkout session {session_id} for user {user_id} failed or expired")
            return self._payment_failed(user_id)

        if get_value(session, "mode") != "subscription":
            return self._result(
                subscription_store.get_record(self.db, user_id),
                error="Checkout session is not a subscription checkout",
            )

        payment_status = get_value(session, "payment_status")
        if get_value(session, "status") != "complete" or payment_status not in ("paid", "no_payment_required"):
            logger.info(
                f"Checkout session {session_id} for user {user_id} still processing "
                f"(status={get_value(session, 'status')}, payment_status={payment_status})"
            )
            return self._result(subscription_store.get_record(self.db, user_id))

        candidate = candidate_from_session(session, "verify:checkout", subscription=subscription)
        return self._result(self.reconciler.reconcile(user_id, candidate))

    def _verify_customer(self, user_id: str, strategy: CustomerStrategy) -> VerificationResult:
        if strategy.user_id != user_id:
            raise OwnershipMismatch(f"Customer pair names user {strategy.user_id}, caller is {user_id}")
        customer_id = strategy.processor_customer_id
        self._check_owner(user_id, customer_id)

        subscription = best_subscription(self.processor.list_subscriptions(customer_id))
        if subscription is None:
            return self._result(
                subscription_store.get_record(self.db, user_id),
                error=f"No subscription found for customer {customer_id}",
            )
        self._check_owner(user_id, customer_id, subscription)
        self._require_claim(user_id, customer_id, subscription)

        if get_value(subscription, "status") == "incomplete_expired":
            return self._payment_failed(user_id)

        candidate = candidate_from_subscription(subscription, "verify:customer", customer_id=customer_id)
        return self._result(self.reconciler.reconcile(user_id, candidate))

    def _verify_subscription(self, user_id: str, subscription_id: str) -> VerificationResult:
        subscription = self.processor.retrieve_subscription(subscription_id)
        customer_id = object_id(get_value(subscription, "customer"))
        self._check_owner(user_id, customer_id, subscription)
        self._require_claim(user_id, customer_id, subscription)

        if get_value(subscription, "status") == "incomplete_expired":
            return self._payment_failed(user_id)

        candidate = candidate_from_subscription(subscription, "verify:subscription")
        return self._result(self.reconciler.reconcile(user_id, candidate))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _check_owner(self, user_id: str, customer_id: Optional[str], obj: Any = None) -> None:
        """Reject identifiers that belong to someone else"""
        if obj is not None:
            claimed = get_value(obj, "client_reference_id") or get_value(get_value(obj, "metadata"), "user_id")
            if claimed and str(claimed) != str(user_id):
                raise OwnershipMismatch(f"Processor object belongs to user {claimed}, caller is {user_id}")

        if not customer_id:
            return
        linked_user = subscription_store.find_user_id_by_customer(self.db, customer_id)
        if linked_user and linked_user != user_id:
            raise OwnershipMismatch(f"Customer {customer_id} is linked to another user")
        record = subscription_store.get_record(self.db, user_id)
        if record is not None and record.processor_customer_id and record.processor_customer_id != customer_id:
            raise OwnershipMismatch(
                f"User {user_id} is linked to customer {record.processor_customer_id}, not {customer_id}"
            )

    def _require_claim(self, user_id: str, customer_id: Optional[str], subscription: Any) -> None:
        """A customer not yet linked to the caller must name the caller on the processor side.

        Linking is permanent, so a bare identifier is not enough: the
        subscription or customer metadata has to carry the caller's user id.
        """
        record = subscription_store.get_record(self.db, user_id)
        if record is not None and customer_id and record.processor_customer_id == customer_id:
            return

        if str(get_value(get_value(subscription, "metadata"), "user_id", "")) == str(user_id):
            return
        if customer_id:
            customer = self.processor.retrieve_customer(customer_id)
            if str(get_value(get_value(customer, "metadata"), "user_id", "")) == str(user_id):
                return
        raise OwnershipMismatch(f"Customer {customer_id} is not registered to user {user_id}")

    def _payment_failed(self, user_id: str) -> VerificationResult:
        # No store mutation: a failed payment never promotes the record
        result = self._result(subscription_store.get_record(self.db, user_id))
        result.success = False
        result.payment_failed = True
        return result

    @staticmethod
    def _result(record: Optional[SubscriptionRecord], error: Optional[str] = None) -> VerificationResult:
        if record is None:
            return VerificationResult(success=False, status="none", error=error)
        return VerificationResult(
            success=status_authority.is_usable(record),
            status=status_authority.effective_status(record).value,
            cancel_at_period_end=bool(record.cancel_at_period_end),
            current_period_end=status_authority.as_utc(record.current_period_end),
            error=error,
        )
