"""Durable log of processor webhook events (idempotency and replay)"""
import logging
from datetime import datetime, timezone
from typing import List

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from slumber_billing.models.stripe_event import StripeEvent

logger = logging.getLogger(__name__)


def log_stripe_event(event_id: str, event_type: str, payload: dict, db: Session) -> StripeEvent:
    stripe_event = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
    if not stripe_event:
        stripe_event = StripeEvent(
            event_id=event_id,
            event_type=event_type,
            payload=payload,
            processed=False
        )
        db.add(stripe_event)
        try:
            db.commit()
        except IntegrityError:
            # Same event delivered twice concurrently
            db.rollback()
            return db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
        db.refresh(stripe_event)
    return stripe_event


def mark_stripe_event_processed(event_id: str, db: Session, error_message: str = None):
    stripe_event = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
    if stripe_event:
        stripe_event.processed = True
        stripe_event.processed_at = datetime.now(timezone.utc)
        stripe_event.attempts = (stripe_event.attempts or 0) + 1
        stripe_event.error_message = error_message
        db.commit()


def record_stripe_event_attempt(event_id: str, db: Session, error_message: str):
    """Leave the event unprocessed (queued for replay) and note why"""
    stripe_event = db.query(StripeEvent).filter(StripeEvent.event_id == event_id).first()
    if stripe_event:
        stripe_event.attempts = (stripe_event.attempts or 0) + 1
        stripe_event.error_message = error_message
        db.commit()


def get_unprocessed_events(db: Session, limit: int = 100) -> List[StripeEvent]:
    return (
        db.query(StripeEvent)
        .filter(StripeEvent.processed.is_(False))
        .order_by(StripeEvent.created_at.asc(), StripeEvent.id.asc())
        .limit(limit)
        .all()
    )
