"""Normalize processor objects into candidate subscription records"""
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable, Optional

from slumber_billing.core.enums import SubscriptionStatus, CandidateSource

logger = logging.getLogger(__name__)

# Processor subscription statuses -> stored statuses
PROCESSOR_STATUS_MAP = {
    "active": SubscriptionStatus.ACTIVE,
    "trialing": SubscriptionStatus.TRIALING,
    "past_due": SubscriptionStatus.PAST_DUE,
    "unpaid": SubscriptionStatus.UNPAID,
    "paused": SubscriptionStatus.UNPAID,
    "incomplete": SubscriptionStatus.INCOMPLETE,
    "incomplete_expired": SubscriptionStatus.CANCELED,
    "canceled": SubscriptionStatus.CANCELED,
}


@dataclass(frozen=True)
class Candidate:
    """A proposed subscription record derived from one event or call"""
    status: SubscriptionStatus
    processor_customer_id: Optional[str]
    processor_subscription_id: Optional[str] = None
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    management_portal_url: Optional[str] = None
    candidate_source: CandidateSource = CandidateSource.SUBSCRIPTION
    origin: str = "unknown"

    def __post_init__(self):
        if not isinstance(self.status, SubscriptionStatus):
            object.__setattr__(self, "status", SubscriptionStatus(self.status))
        if self.processor_subscription_id and self.status == SubscriptionStatus.NONE:
            raise ValueError("A candidate with a subscription id cannot have status 'none'")

    def replace(self, **changes) -> "Candidate":
        return dataclasses.replace(self, **changes)


# ============================================================================
# STRIPE OBJECT ACCESS HELPERS
# ============================================================================

def get_value(obj: Any, key: str, default=None):
    """Safely extract a value from a Stripe object (supports dict and attribute access)."""
    if obj is None:
        return default
    # StripeObject is a dict subclass; dict access avoids clashes such as 'items'
    if isinstance(obj, dict):
        value = obj.get(key, default)
        return default if value is None else value
    value = getattr(obj, key, default)
    return default if value is None else value


def object_id(value: Any) -> Optional[str]:
    """Id of a reference that may be a bare id or an expanded object"""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return get_value(value, "id")


def to_datetime(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def map_status(processor_status: Optional[str]) -> SubscriptionStatus:
    mapped = PROCESSOR_STATUS_MAP.get(processor_status or "")
    if mapped is None:
        logger.warning(f"Unknown processor subscription status {processor_status!r}, treating as incomplete")
        return SubscriptionStatus.INCOMPLETE
    return mapped


def period_end_of(subscription: Any) -> Optional[datetime]:
    """current_period_end, read from the subscription or (newer API versions) its first item"""
    end = get_value(subscription, "current_period_end")
    if end is None:
        items = get_value(get_value(subscription, "items"), "data") or []
        for item in items:
            end = get_value(item, "current_period_end")
            if end is not None:
                break
    return to_datetime(end)


# ============================================================================
# BUILDERS
# ============================================================================

def candidate_from_subscription(
    subscription: Any,
    origin: str,
    now: Optional[datetime] = None,
    customer_id: Optional[str] = None,
) -> Candidate:
    """Build a candidate from the processor's subscription object.

    A subscription reported as canceled while its paid period is still running
    is a scheduled cancellation, not a revocation: ``cancel_at_period_end`` is
    kept true so the record stays usable until the period ends.
    """
    now = now or datetime.now(timezone.utc)
    status = map_status(get_value(subscription, "status"))
    period_end = period_end_of(subscription)
    cancel_at_period_end = bool(get_value(subscription, "cancel_at_period_end", False))

    if status == SubscriptionStatus.CANCELED and period_end is not None and period_end > now:
        cancel_at_period_end = True

    return Candidate(
        status=status,
        processor_customer_id=object_id(get_value(subscription, "customer")) or customer_id,
        processor_subscription_id=object_id(get_value(subscription, "id")),
        cancel_at_period_end=cancel_at_period_end,
        canceled_at=to_datetime(get_value(subscription, "canceled_at")),
        current_period_end=period_end,
        candidate_source=CandidateSource.SUBSCRIPTION,
        origin=origin,
    )


def candidate_from_deleted(subscription: Any, origin: str, now: Optional[datetime] = None) -> Candidate:
    """Permanent deletion: the only candidate that clears the subscription id"""
    now = now or datetime.now(timezone.utc)
    canceled_at = (
        to_datetime(get_value(subscription, "canceled_at"))
        or to_datetime(get_value(subscription, "ended_at"))
        or now
    )
    return Candidate(
        status=SubscriptionStatus.CANCELED,
        processor_customer_id=object_id(get_value(subscription, "customer")),
        processor_subscription_id=None,
        cancel_at_period_end=False,
        canceled_at=canceled_at,
        current_period_end=to_datetime(get_value(subscription, "ended_at")) or period_end_of(subscription),
        candidate_source=CandidateSource.SUBSCRIPTION,
        origin=origin,
    )


def candidate_from_session(session: Any, origin: str, subscription: Any = None,
                           now: Optional[datetime] = None) -> Candidate:
    """Candidate for a completed checkout session.

    With the subscription object available the session is only used for the
    customer id; without it the status is under-specified and the candidate is
    marked as synthesized so any real subscription object outranks it.
    """
    customer_id = object_id(get_value(session, "customer"))
    if subscription is not None and not isinstance(subscription, str):
        return candidate_from_subscription(subscription, origin, now=now, customer_id=customer_id)
    return Candidate(
        status=SubscriptionStatus.INCOMPLETE,
        processor_customer_id=customer_id,
        processor_subscription_id=object_id(subscription),
        candidate_source=CandidateSource.SESSION,
        origin=origin,
    )


def best_subscription(subscriptions: Iterable[Any]) -> Optional[Any]:
    """Pick the subscription that best describes a customer: usable first, then most recent"""
    def sort_key(sub):
        usable = map_status(get_value(sub, "status")) in (SubscriptionStatus.ACTIVE, SubscriptionStatus.TRIALING)
        return (1 if usable else 0, int(get_value(sub, "created", 0) or 0))

    subscriptions = list(subscriptions or [])
    if not subscriptions:
        return None
    return max(subscriptions, key=sort_key)
