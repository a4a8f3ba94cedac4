"""Webhook Ingest - verify, classify and reconcile processor push events"""
import json
from typing import Any, Callable, Dict, Optional

import stripe
from sqlalchemy.orm import Session

from slumber_billing.core.config import settings
from slumber_billing.core.errors import (
    BillingError, InvalidWebhookPayload, ProcessorUnavailable,
    ReconcileBusy, StoreConflict, UnmappedCustomer, WebhookSignatureError,
)
from slumber_billing.core.logging import webhook_logger
from slumber_billing.core.metrics import webhook_events_counter
from slumber_billing.services import subscription_store
from slumber_billing.services.candidates import (
    Candidate, candidate_from_deleted, candidate_from_session,
    candidate_from_subscription, get_value, object_id,
)
from slumber_billing.services.event_log import (
    log_stripe_event, mark_stripe_event_processed, record_stripe_event_attempt,
)
from slumber_billing.services.processor_client import ProcessorClient
from slumber_billing.services.reconciler import Reconciler

logger = webhook_logger


class WebhookIngest:
    """Turns signed processor events into reconciled subscription records.

    Responses are designed around the sender's retry behaviour: everything that
    a redelivery cannot fix (unknown types, unmapped customers, bad data) is
    acknowledged, and only transient processor failures propagate so the route
    can ask for a retry.
    """

    def __init__(
        self,
        db: Session,
        processor: ProcessorClient,
        reconciler: Optional[Reconciler] = None,
        webhook_secret: Optional[str] = None,
        portal_return_url: Optional[str] = None,
    ):
        self.db = db
        self.processor = processor
        self.reconciler = reconciler or Reconciler(db)
        self.webhook_secret = settings.STRIPE_WEBHOOK_SECRET if webhook_secret is None else webhook_secret
        self.portal_return_url = portal_return_url or settings.portal_return_url
        self._handlers: Dict[str, Callable[[Any, str], Optional[tuple]]] = {
            "checkout.session.completed": self._on_checkout_completed,
            "customer.subscription.created": self._on_subscription_changed,
            "customer.subscription.updated": self._on_subscription_changed,
            "customer.subscription.deleted": self._on_subscription_deleted,
            "invoice.payment_succeeded": self._on_invoice,
            "invoice.payment_failed": self._on_invoice,
            "invoice.paid": self._on_invoice,
        }

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def verify(self, payload: bytes, sig_header: Optional[str]) -> dict:
        """Check the signature and return the event as a plain dict (fail closed)"""
        if not self.webhook_secret:
            logger.error("Webhook secret not configured, rejecting event")
            raise WebhookSignatureError("Webhook secret not configured")
        if not sig_header:
            raise WebhookSignatureError("Missing stripe-signature header")

        try:
            stripe.Webhook.construct_event(payload, sig_header, self.webhook_secret)
        except ValueError as e:
            logger.error(f"Invalid webhook payload: {e}")
            raise InvalidWebhookPayload("Invalid payload") from e
        except stripe.SignatureVerificationError as e:
            logger.error(f"Invalid webhook signature: {e}")
            raise WebhookSignatureError("Invalid signature") from e

        event = json.loads(payload)
        if not isinstance(event, dict) or not event.get("id") or not event.get("type"):
            raise InvalidWebhookPayload("Event is missing id or type")
        if not isinstance(get_value(event.get("data"), "object"), dict):
            raise InvalidWebhookPayload("Event is missing data.object")
        return event

    def process(self, payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
        """Verify, durably log and handle one webhook delivery.

        Raises:
            WebhookSignatureError: bad or missing signature (no mutation)
            InvalidWebhookPayload: body is not a processor event
            ProcessorUnavailable: transient processor failure, redelivery wanted
        """
        event = self.verify(payload, sig_header)
        event_id, event_type = event["id"], event["type"]

        stripe_event = log_stripe_event(event_id, event_type, event, self.db)
        if stripe_event.processed:
            logger.info(f"Webhook event {event_id} already processed")
            webhook_events_counter.labels(event_type=event_type, outcome="duplicate").inc()
            return {"status": "already_processed"}

        return self.handle_logged_event(event_id, event_type, event["data"]["object"])

    def handle_logged_event(self, event_id: str, event_type: str, data: Any) -> Dict[str, Any]:
        """Handle an event that is already in the event log (live delivery or replay)"""
        try:
            outcome = self.dispatch(event_type, data)
        except (ReconcileBusy, StoreConflict) as e:
            # Event is durably logged; acknowledge and leave it for replay
            logger.warning(f"Webhook event {event_id} ({event_type}) queued for replay: {e}")
            record_stripe_event_attempt(event_id, self.db, str(e))
            webhook_events_counter.labels(event_type=event_type, outcome="queued").inc()
            return {"status": "queued"}
        except ProcessorUnavailable as e:
            logger.warning(f"Processor unavailable while handling {event_type} event {event_id}: {e}")
            record_stripe_event_attempt(event_id, self.db, str(e))
            webhook_events_counter.labels(event_type=event_type, outcome="retry").inc()
            raise
        except UnmappedCustomer as e:
            logger.error(
                f"Dropping {event_type} event {event_id}: no user linked to customer {e.customer_id}"
            )
            mark_stripe_event_processed(event_id, self.db, error_message=str(e))
            webhook_events_counter.labels(event_type=event_type, outcome="unmapped").inc()
            return {"status": "ignored", "reason": "unmapped_customer"}
        except Exception as e:
            # Log error but acknowledge: a redelivery would fail the same way
            logger.error(f"Error processing webhook {event_id} ({event_type}): {e}", exc_info=True)
            mark_stripe_event_processed(event_id, self.db, error_message=str(e))
            webhook_events_counter.labels(event_type=event_type, outcome="error").inc()
            return {"status": "error_logged"}

        mark_stripe_event_processed(event_id, self.db)
        webhook_events_counter.labels(event_type=event_type, outcome=outcome).inc()
        logger.info(f"Webhook event {event_id} of type {event_type}: {outcome}")
        return {"status": outcome}

    def dispatch(self, event_type: str, data: Any) -> str:
        """Classify one event and reconcile its candidate. Returns the outcome label."""
        handler = self._handlers.get(event_type)
        if handler is None:
            logger.debug(f"Unhandled event type: {event_type}")
            return "ignored"

        resolved = handler(data, event_type)
        if resolved is None:
            return "ignored"

        user_id, candidate = resolved
        self.reconciler.reconcile(user_id, candidate)
        return "processed"

    # ------------------------------------------------------------------
    # Handlers: each returns (user_id, candidate) or None when there is nothing to do
    # ------------------------------------------------------------------

    def _on_checkout_completed(self, session: Any, event_type: str) -> Optional[tuple]:
        if get_value(session, "mode") != "subscription":
            logger.info(f"Checkout session {get_value(session, 'id')} is not a subscription checkout, skipping")
            return None

        customer_id = object_id(get_value(session, "customer"))
        if not customer_id:
            logger.warning(f"No customer ID in checkout session {get_value(session, 'id')}, skipping")
            return None

        user_id = self._resolve_checkout_user(session, customer_id, event_type)
        origin = f"webhook:{event_type}"

        subscription_ref = get_value(session, "subscription")
        subscription_id = object_id(subscription_ref)
        if subscription_id:
            # A session alone under-specifies status; fetch the subscription itself
            subscription = self.processor.retrieve_subscription(subscription_id)
            candidate = candidate_from_session(session, origin, subscription=subscription)
        else:
            candidate = candidate_from_session(session, origin)

        portal_url = self._portal_url(customer_id)
        if portal_url:
            candidate = candidate.replace(management_portal_url=portal_url)
        return user_id, candidate

    def _on_subscription_changed(self, subscription: Any, event_type: str) -> Optional[tuple]:
        origin = f"webhook:{event_type}"
        candidate = candidate_from_subscription(subscription, origin)
        if candidate.current_period_end is None and candidate.processor_subscription_id:
            logger.info(
                f"Event for subscription {candidate.processor_subscription_id} has no period end, "
                f"fetching it from the processor"
            )
            refreshed = self.processor.retrieve_subscription(candidate.processor_subscription_id)
            candidate = candidate_from_subscription(refreshed, origin)
        return self._user_for(candidate, event_type), candidate

    def _on_subscription_deleted(self, subscription: Any, event_type: str) -> Optional[tuple]:
        candidate = candidate_from_deleted(subscription, f"webhook:{event_type}")
        return self._user_for(candidate, event_type), candidate

    def _on_invoice(self, invoice: Any, event_type: str) -> Optional[tuple]:
        subscription_id = self._invoice_subscription_id(invoice)
        if not subscription_id:
            logger.info(f"Invoice {get_value(invoice, 'id')} is not a subscription invoice, skipping")
            return None
        # Invoices do not carry authoritative subscription status
        subscription = self.processor.retrieve_subscription(subscription_id)
        candidate = candidate_from_subscription(subscription, f"webhook:{event_type}")
        return self._user_for(candidate, event_type), candidate

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _invoice_subscription_id(invoice: Any) -> Optional[str]:
        subscription_id = object_id(get_value(invoice, "subscription"))
        if subscription_id:
            return subscription_id
        # Newer API versions nest it under parent.subscription_details
        details = get_value(get_value(invoice, "parent"), "subscription_details")
        return object_id(get_value(details, "subscription"))

    def _user_for(self, candidate: Candidate, event_type: str) -> str:
        user_id = subscription_store.find_user_id_by_customer(self.db, candidate.processor_customer_id)
        if not user_id:
            raise UnmappedCustomer(candidate.processor_customer_id, event_type)
        return user_id

    def _resolve_checkout_user(self, session: Any, customer_id: str, event_type: str) -> str:
        """Existing customer link first; a first checkout names its user in metadata"""
        user_id = subscription_store.find_user_id_by_customer(self.db, customer_id)
        if user_id:
            return user_id

        user_id = (
            get_value(session, "client_reference_id")
            or get_value(get_value(session, "metadata"), "user_id")
        )
        if not user_id:
            customer = self.processor.retrieve_customer(customer_id)
            user_id = get_value(get_value(customer, "metadata"), "user_id")
            if user_id:
                logger.info(f"Found user_id {user_id} in metadata of customer {customer_id}")

        if not user_id:
            raise UnmappedCustomer(customer_id, event_type)
        return str(user_id)

    def _portal_url(self, customer_id: str) -> Optional[str]:
        try:
            return self.processor.create_portal_session(customer_id, self.portal_return_url)
        except BillingError as e:
            logger.warning(f"Could not create portal session for customer {customer_id}: {e}")
            return None
