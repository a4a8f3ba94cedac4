"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from slumber_billing.models.base import Base
from slumber_billing.core.enums import SubscriptionStatus, CandidateSource
from slumber_billing.models.subscription import SubscriptionRecord
from slumber_billing.models.stripe_event import StripeEvent

__all__ = [
    "Base", "SubscriptionStatus", "CandidateSource",
    "SubscriptionRecord", "StripeEvent"
]
