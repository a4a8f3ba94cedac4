"""Subscription Store - keyed by user id, written only through the Reconciler"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from slumber_billing.models.subscription import SubscriptionRecord

logger = logging.getLogger(__name__)

# Columns a reconciliation is allowed to write
WRITABLE_FIELDS = (
    "processor_customer_id",
    "processor_subscription_id",
    "status",
    "cancel_at_period_end",
    "canceled_at",
    "current_period_end",
    "management_portal_url",
    "candidate_source",
)


def get_record(db: Session, user_id: str) -> Optional[SubscriptionRecord]:
    """Read the current record for a user (read path used by the UI)"""
    return db.query(SubscriptionRecord).filter(SubscriptionRecord.user_id == user_id).first()


def find_user_id_by_customer(db: Session, customer_id: Optional[str]) -> Optional[str]:
    if not customer_id:
        return None
    row = db.query(SubscriptionRecord.user_id).filter(
        SubscriptionRecord.processor_customer_id == customer_id
    ).first()
    return row[0] if row else None


def _validate(values: Dict[str, Any]) -> None:
    unknown = set(values) - set(WRITABLE_FIELDS)
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")
    if values.get("processor_subscription_id") and values.get("status") == "none":
        raise ValueError("processor_subscription_id requires a status other than 'none'")


def insert_record(db: Session, user_id: str, values: Dict[str, Any]) -> Optional[SubscriptionRecord]:
    """Create the first record for a user.

    Returns None when a concurrent writer created the row first (unique user_id).
    """
    _validate(values)
    now = datetime.now(timezone.utc)
    record = SubscriptionRecord(user_id=user_id, version=1, created_at=now, updated_at=now, **values)
    db.add(record)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Record for user {user_id} was created concurrently")
        return None
    db.refresh(record)
    return record


def conditional_update(db: Session, user_id: str, expected_version: int, values: Dict[str, Any]) -> bool:
    """Compare-and-swap write: applies only if the row is still at ``expected_version``"""
    _validate(values)
    result = db.execute(
        update(SubscriptionRecord)
        .where(SubscriptionRecord.user_id == user_id)
        .where(SubscriptionRecord.version == expected_version)
        .values(
            **values,
            version=expected_version + 1,
            updated_at=datetime.now(timezone.utc),
        )
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1


def get_lapsed_cancellations(db: Session, now: datetime, limit: int = 100) -> List[SubscriptionRecord]:
    """Scheduled cancellations whose paid period has ended but still hold a subscription"""
    return (
        db.query(SubscriptionRecord)
        .filter(
            SubscriptionRecord.cancel_at_period_end.is_(True),
            SubscriptionRecord.current_period_end <= now,
            SubscriptionRecord.processor_subscription_id.isnot(None),
        )
        .order_by(SubscriptionRecord.current_period_end.asc())
        .limit(limit)
        .all()
    )
