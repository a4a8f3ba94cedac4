"""Subscriptions API routes"""
import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from slumber_billing.core.config import settings
from slumber_billing.core.errors import (
    InvalidWebhookPayload, OwnershipMismatch, ProcessorRequestError,
    ProcessorUnavailable, ReconcileBusy, StoreConflict, WebhookSignatureError,
)
from slumber_billing.db.session import get_db
from slumber_billing.schemas.subscriptions import (
    PollResponse, PortalResponse, SubscriptionRecordOut,
    VerifyPaymentRequest, VerifyPaymentResponse,
)
from slumber_billing.services import subscription_store
from slumber_billing.services.polling import PollingFallback
from slumber_billing.services.processor_client import ProcessorClient
from slumber_billing.services.reconciler import Reconciler
from slumber_billing.services.verification import VerificationClient
from slumber_billing.services.webhook_ingest import WebhookIngest

router = APIRouter(prefix="/api/subscription", tags=["subscriptions"])
logger = logging.getLogger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_current_user_id(request: Request) -> str:
    """Caller identity, forwarded by the authenticating layer in front of this service"""
    user_id = request.headers.get(settings.USER_ID_HEADER)
    if not user_id:
        raise HTTPException(401, "Not authenticated")
    return user_id


@lru_cache
def get_processor_client() -> ProcessorClient:
    return ProcessorClient.from_settings()


def get_reconciler(db: Session = Depends(get_db)) -> Reconciler:
    return Reconciler(db)


def get_webhook_ingest(
    db: Session = Depends(get_db),
    processor: ProcessorClient = Depends(get_processor_client),
    reconciler: Reconciler = Depends(get_reconciler),
) -> WebhookIngest:
    return WebhookIngest(db, processor, reconciler)


def get_verification_client(
    db: Session = Depends(get_db),
    processor: ProcessorClient = Depends(get_processor_client),
    reconciler: Reconciler = Depends(get_reconciler),
) -> VerificationClient:
    return VerificationClient(db, processor, reconciler)


def get_polling_fallback(
    db: Session = Depends(get_db),
    processor: ProcessorClient = Depends(get_processor_client),
    reconciler: Reconciler = Depends(get_reconciler),
) -> PollingFallback:
    return PollingFallback(db, processor, reconciler)


# ============================================================================
# ROUTES
# ============================================================================

@router.post("/webhook")
async def stripe_webhook(request: Request, ingest: WebhookIngest = Depends(get_webhook_ingest)):
    """Handle Stripe webhook events

    Note: This route must be excluded from any global JSON parsing middleware
    to ensure the request body remains as raw bytes for signature verification.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        return await run_in_threadpool(ingest.process, payload, sig_header)
    except InvalidWebhookPayload as e:
        raise HTTPException(400, str(e))
    except WebhookSignatureError as e:
        raise HTTPException(400, str(e))
    except ProcessorUnavailable as e:
        # Stripe redelivers on non-2xx
        logger.warning(f"Asking for webhook redelivery: {e}")
        return JSONResponse(status_code=503, content={"status": "retry", "message": "Processor unavailable"})


@router.post("/verify", response_model=VerifyPaymentResponse)
def verify_payment(
    body: VerifyPaymentRequest,
    user_id: str = Depends(get_current_user_id),
    client: VerificationClient = Depends(get_verification_client),
):
    """Verify a checkout right after payment (safe to call repeatedly)"""
    try:
        result = client.verify(user_id, body.strategies())
    except OwnershipMismatch:
        raise HTTPException(403, "Checkout does not belong to this user")
    except (ReconcileBusy, StoreConflict) as e:
        logger.warning(f"Verification for user {user_id} could not be applied: {e}")
        raise HTTPException(503, "Subscription is being updated, try again shortly")

    return VerifyPaymentResponse(
        success=result.success,
        status=result.status,
        payment_failed=result.payment_failed,
        cancel_at_period_end=result.cancel_at_period_end,
        current_period_end=result.current_period_end,
        error=result.error,
    )


@router.post("/poll", response_model=PollResponse)
def poll_subscription(
    user_id: str = Depends(get_current_user_id),
    polling: PollingFallback = Depends(get_polling_fallback),
):
    """Single poll of the processor; the client backs off between calls"""
    try:
        result = polling.poll(user_id)
    except (ReconcileBusy, StoreConflict):
        return PollResponse(available=False, reason="busy")

    subscription = SubscriptionRecordOut.model_validate(result.record) if result.record else None
    return PollResponse(available=result.available, reason=result.reason, subscription=subscription)


@router.get("/status")
def get_subscription_status(user_id: str = Depends(get_current_user_id), db: Session = Depends(get_db)):
    """Get the caller's stored subscription record"""
    record = subscription_store.get_record(db, user_id)
    if not record:
        return {"subscription": None}
    return {"subscription": SubscriptionRecordOut.model_validate(record)}


@router.post("/portal", response_model=PortalResponse)
def create_portal_session(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    processor: ProcessorClient = Depends(get_processor_client),
):
    """Get Stripe customer portal URL"""
    record = subscription_store.get_record(db, user_id)
    if not record or not record.processor_customer_id:
        raise HTTPException(404, "No billing account for this user")

    try:
        url = processor.create_portal_session(record.processor_customer_id, settings.portal_return_url)
    except ProcessorUnavailable:
        raise HTTPException(503, "Payment processor unavailable")
    except ProcessorRequestError as e:
        logger.error(f"Portal session for user {user_id} rejected: {e}")
        raise HTTPException(502, "Failed to create portal session")

    if not url:
        raise HTTPException(502, "Failed to create portal session")
    return PortalResponse(url=url)
