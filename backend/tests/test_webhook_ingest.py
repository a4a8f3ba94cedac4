"""Webhook ingest tests (signature, classification, identity, failure handling)"""
from datetime import datetime, timedelta, timezone

import pytest

from slumber_billing.core.enums import CandidateSource, SubscriptionStatus
from slumber_billing.core.errors import (
    InvalidWebhookPayload, ProcessorRequestError, ProcessorUnavailable, WebhookSignatureError,
)
from slumber_billing.models.stripe_event import StripeEvent
from slumber_billing.db.redis import user_lock
from slumber_billing.services import subscription_store
from slumber_billing.services.candidates import Candidate
from slumber_billing.services.webhook_ingest import WebhookIngest

USER_ID = "user_42"


def link_customer(ingest, user_id=USER_ID, customer="cus_123"):
    """Seed a record so the customer id maps to a user"""
    ingest.reconciler.reconcile(user_id, Candidate(
        status=SubscriptionStatus.INCOMPLETE,
        processor_customer_id=customer,
        candidate_source=CandidateSource.SESSION,
        origin="seed",
    ))


@pytest.mark.critical
class TestSignature:
    """Fail closed on anything that is not signed with our secret"""

    def test_bad_signature_rejected_without_mutation(self, ingest, db_session, signed_event, make_subscription):
        link_customer(ingest)
        payload, _ = signed_event("customer.subscription.updated", make_subscription(status="active"))
        _, forged = signed_event("customer.subscription.updated", {}, secret="whsec_wrong")

        with pytest.raises(WebhookSignatureError):
            ingest.process(payload, forged)

        assert subscription_store.get_record(db_session, USER_ID).status == "incomplete"
        assert db_session.query(StripeEvent).count() == 0

    def test_missing_signature_header(self, ingest, signed_event):
        payload, _ = signed_event("customer.subscription.updated", {})
        with pytest.raises(WebhookSignatureError):
            ingest.process(payload, None)

    def test_missing_secret_fails_closed(self, db_session, processor, reconciler, signed_event):
        ingest = WebhookIngest(db_session, processor, reconciler, webhook_secret="")
        payload, header = signed_event("customer.subscription.updated", {})
        with pytest.raises(WebhookSignatureError):
            ingest.process(payload, header)

    def test_unparseable_body(self, ingest, sign_payload):
        payload = b"not json"
        with pytest.raises(InvalidWebhookPayload):
            ingest.process(payload, sign_payload(payload))

    def test_event_without_type(self, ingest, db_session, sign_payload):
        payload = b'{"id": "evt_1", "object": "event", "data": {"object": {}}}'
        with pytest.raises(InvalidWebhookPayload):
            ingest.process(payload, sign_payload(payload))
        assert db_session.query(StripeEvent).count() == 0


@pytest.mark.critical
class TestCheckoutCompleted:

    def test_first_checkout_creates_record(self, ingest, processor, db_session, signed_event,
                                           make_session, make_subscription):
        processor.subscriptions["sub_123"] = make_subscription(status="active")
        session = make_session(client_reference_id=USER_ID)
        result = ingest.process(*signed_event("checkout.session.completed", session))

        assert result == {"status": "processed"}
        record = subscription_store.get_record(db_session, USER_ID)
        assert record.status == "active"
        assert record.processor_customer_id == "cus_123"
        assert record.processor_subscription_id == "sub_123"
        assert record.management_portal_url == processor.portal_url
        assert processor.call_count("retrieve_subscription") == 1

    def test_user_from_session_metadata(self, ingest, processor, db_session, signed_event,
                                        make_session, make_subscription):
        processor.subscriptions["sub_123"] = make_subscription()
        ingest.process(*signed_event("checkout.session.completed", make_session(metadata={"user_id": USER_ID})))
        assert subscription_store.get_record(db_session, USER_ID) is not None

    def test_user_from_customer_metadata(self, ingest, processor, db_session, signed_event,
                                         make_session, make_subscription):
        processor.subscriptions["sub_123"] = make_subscription()
        processor.customers["cus_123"] = {"id": "cus_123", "metadata": {"user_id": USER_ID}}
        ingest.process(*signed_event("checkout.session.completed", make_session()))
        assert subscription_store.get_record(db_session, USER_ID) is not None

    def test_session_without_subscription_is_incomplete(self, ingest, db_session, signed_event, make_session):
        session = make_session(subscription=None, client_reference_id=USER_ID)
        ingest.process(*signed_event("checkout.session.completed", session))
        record = subscription_store.get_record(db_session, USER_ID)
        assert record.status == "incomplete"
        assert record.candidate_source == "session"
        assert record.processor_subscription_id is None

    def test_payment_mode_session_ignored(self, ingest, db_session, signed_event, make_session):
        session = make_session(mode="payment", client_reference_id=USER_ID)
        assert ingest.process(*signed_event("checkout.session.completed", session)) == {"status": "ignored"}
        assert subscription_store.get_record(db_session, USER_ID) is None

    def test_portal_failure_is_best_effort(self, ingest, processor, db_session, signed_event,
                                           make_session, make_subscription):
        processor.subscriptions["sub_123"] = make_subscription()
        processor.fail("create_portal_session", ProcessorRequestError("create_portal_session", "no config"))
        ingest.process(*signed_event("checkout.session.completed", make_session(client_reference_id=USER_ID)))
        record = subscription_store.get_record(db_session, USER_ID)
        assert record.status == "active"
        assert record.management_portal_url is None


@pytest.mark.critical
class TestSubscriptionEvents:

    def test_updated_applies_candidate(self, ingest, db_session, signed_event, make_subscription):
        link_customer(ingest)
        ingest.process(*signed_event("customer.subscription.updated", make_subscription(status="trialing")))
        assert subscription_store.get_record(db_session, USER_ID).status == "trialing"

    def test_created_applies_candidate(self, ingest, db_session, signed_event, make_subscription):
        link_customer(ingest)
        ingest.process(*signed_event("customer.subscription.created", make_subscription(status="active")))
        assert subscription_store.get_record(db_session, USER_ID).status == "active"

    def test_missing_period_end_refetched(self, ingest, processor, db_session, signed_event, make_subscription):
        link_customer(ingest)
        processor.subscriptions["sub_123"] = make_subscription(status="active")
        payload_sub = make_subscription(status="active")
        del payload_sub["current_period_end"]
        ingest.process(*signed_event("customer.subscription.updated", payload_sub))
        assert processor.call_count("retrieve_subscription") == 1
        assert subscription_store.get_record(db_session, USER_ID).current_period_end is not None

    def test_stale_past_due_does_not_downgrade(self, ingest, db_session, signed_event, make_subscription):
        link_customer(ingest)
        end = datetime.now(timezone.utc) + timedelta(days=30)
        ingest.process(*signed_event("customer.subscription.updated", make_subscription(period_end=end)))
        ingest.process(*signed_event("customer.subscription.updated",
                                     make_subscription(status="past_due", period_end=end)))
        assert subscription_store.get_record(db_session, USER_ID).status == "active"

    def test_deleted_after_period_clears_subscription(self, ingest, db_session, signed_event, make_subscription):
        link_customer(ingest)
        ended = datetime.now(timezone.utc) - timedelta(hours=1)
        ingest.process(*signed_event("customer.subscription.updated", make_subscription(period_end=ended)))
        ingest.process(*signed_event("customer.subscription.deleted",
                                     make_subscription(status="canceled", period_end=ended)))
        record = subscription_store.get_record(db_session, USER_ID)
        assert record.status == "canceled"
        assert record.processor_subscription_id is None
        assert record.canceled_at is not None

    def test_invoice_refetches_subscription(self, ingest, processor, db_session, signed_event, make_subscription):
        link_customer(ingest)
        processor.subscriptions["sub_123"] = make_subscription(status="past_due")
        invoice = {"id": "in_1", "object": "invoice", "customer": "cus_123", "subscription": "sub_123"}
        ingest.process(*signed_event("invoice.payment_failed", invoice))
        assert processor.call_count("retrieve_subscription") == 1
        assert subscription_store.get_record(db_session, USER_ID).status == "past_due"

    def test_invoice_with_nested_subscription_reference(self, ingest, processor, db_session, signed_event,
                                                        make_subscription):
        link_customer(ingest)
        processor.subscriptions["sub_123"] = make_subscription(status="active")
        invoice = {
            "id": "in_2", "object": "invoice", "customer": "cus_123",
            "parent": {"subscription_details": {"subscription": "sub_123"}},
        }
        ingest.process(*signed_event("invoice.paid", invoice))
        assert subscription_store.get_record(db_session, USER_ID).status == "active"

    def test_one_off_invoice_ignored(self, ingest, signed_event):
        invoice = {"id": "in_3", "object": "invoice", "customer": "cus_123", "subscription": None}
        assert ingest.process(*signed_event("invoice.payment_succeeded", invoice)) == {"status": "ignored"}


@pytest.mark.high
class TestAcknowledgement:
    """What gets acknowledged, retried or queued"""

    def test_unknown_event_ignored(self, ingest, signed_event):
        assert ingest.process(*signed_event("customer.created", {"id": "cus_9"})) == {"status": "ignored"}

    def test_duplicate_event_skipped(self, ingest, db_session, signed_event, make_subscription):
        link_customer(ingest)
        body = signed_event("customer.subscription.updated", make_subscription(), event_id="evt_dup")
        assert ingest.process(*body) == {"status": "processed"}
        assert ingest.process(*body) == {"status": "already_processed"}
        assert db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_dup").count() == 1

    def test_unmapped_customer_dropped_safely(self, ingest, db_session, signed_event, make_subscription):
        link_customer(ingest, user_id="someone", customer="cus_known")
        result = ingest.process(*signed_event("customer.subscription.updated",
                                              make_subscription(customer="cus_unknown")))
        assert result == {"status": "ignored", "reason": "unmapped_customer"}
        assert subscription_store.find_user_id_by_customer(db_session, "cus_unknown") is None
        assert subscription_store.get_record(db_session, "someone").status == "incomplete"

    def test_transient_failure_propagates_and_stays_unprocessed(self, ingest, processor, db_session,
                                                                signed_event):
        link_customer(ingest)
        processor.fail("retrieve_subscription", ProcessorUnavailable("retrieve_subscription", "timeout"))
        invoice = {"id": "in_1", "customer": "cus_123", "subscription": "sub_123"}
        with pytest.raises(ProcessorUnavailable):
            ingest.process(*signed_event("invoice.paid", invoice, event_id="evt_transient"))
        event = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_transient").one()
        assert event.processed is False
        assert event.attempts == 1

    def test_busy_user_is_queued(self, ingest, db_session, mock_redis, signed_event, make_subscription):
        link_customer(ingest)
        mock_redis.set(f"reconcile_lock:{USER_ID}", "other-writer", ex=30)
        ingest.reconciler.lock_factory = _no_wait_lock
        result = ingest.process(*signed_event("customer.subscription.updated", make_subscription(),
                                              event_id="evt_busy"))
        assert result == {"status": "queued"}
        event = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_busy").one()
        assert event.processed is False

    def test_unexpected_error_acknowledged(self, ingest, processor, db_session, signed_event):
        link_customer(ingest)
        processor.fail("retrieve_subscription", ProcessorRequestError("retrieve_subscription", "No such sub"))
        invoice = {"id": "in_1", "customer": "cus_123", "subscription": "sub_gone"}
        result = ingest.process(*signed_event("invoice.paid", invoice, event_id="evt_err"))
        assert result == {"status": "error_logged"}
        event = db_session.query(StripeEvent).filter(StripeEvent.event_id == "evt_err").one()
        assert event.processed is True
        assert event.error_message


def _no_wait_lock(user_id):
    return user_lock(user_id, wait=0)


@pytest.mark.critical
class TestScheduledCancellationScenario:
    """checkout -> active -> cancel at period end -> still usable -> lapses"""

    def test_full_lifecycle(self, ingest, processor, db_session, signed_event, make_session, make_subscription):
        period_end = datetime.now(timezone.utc) + timedelta(days=30)
        processor.subscriptions["sub_123"] = make_subscription(status="active", period_end=period_end)

        # 1. Checkout completes
        ingest.process(*signed_event("checkout.session.completed", make_session(client_reference_id=USER_ID)))
        record = subscription_store.get_record(db_session, USER_ID)
        assert record.status == "active" and record.is_usable

        # 2. User schedules cancellation in the portal
        ingest.process(*signed_event("customer.subscription.updated",
                                     make_subscription(status="active", period_end=period_end,
                                                       cancel_at_period_end=True)))
        record = subscription_store.get_record(db_session, USER_ID)
        assert record.cancel_at_period_end is True
        assert record.is_usable

        # 3. Processor reports canceled while the paid period is still running
        ingest.process(*signed_event("customer.subscription.updated",
                                     make_subscription(status="canceled", period_end=period_end,
                                                       canceled_at=datetime.now(timezone.utc))))
        record = subscription_store.get_record(db_session, USER_ID)
        assert record.status == "canceled"
        assert record.effective_status == "active"
        assert record.cancel_at_period_end is True
        assert record.is_usable
