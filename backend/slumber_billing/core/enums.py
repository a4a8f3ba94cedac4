"""Enumerations stored on subscription records"""
import enum


class SubscriptionStatus(str, enum.Enum):
    """Subscription status as persisted for a user"""
    NONE = "none"
    INCOMPLETE = "incomplete"
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    UNPAID = "unpaid"
    CANCELED = "canceled"


class CandidateSource(str, enum.Enum):
    """Kind of processor object a candidate was built from"""
    SUBSCRIPTION = "subscription"  # the processor's own subscription object
    SESSION = "session"  # synthesized from a checkout session without a subscription
