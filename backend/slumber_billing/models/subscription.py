"""SubscriptionRecord model"""
from sqlalchemy import Column, Integer, String, DateTime, Boolean, CheckConstraint
from datetime import datetime, timezone
from slumber_billing.models.base import Base
from slumber_billing.core.enums import SubscriptionStatus, CandidateSource
from slumber_billing.services import status_authority


class SubscriptionRecord(Base):
    """Current subscription state for one user (one row per user)"""
    __tablename__ = "customer_subscriptions"
    __table_args__ = (
        CheckConstraint(
            "processor_subscription_id IS NULL OR status <> 'none'",
            name="ck_subscription_id_requires_status"
        ),
    )

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(255), nullable=False, unique=True, index=True)
    processor_customer_id = Column(String(255), nullable=True, index=True)
    processor_subscription_id = Column(String(255), nullable=True, index=True)
    status = Column(String(32), nullable=False, default=SubscriptionStatus.NONE.value)
    cancel_at_period_end = Column(Boolean, default=False, nullable=False)
    canceled_at = Column(DateTime(timezone=True), nullable=True)
    current_period_end = Column(DateTime(timezone=True), nullable=True)
    management_portal_url = Column(String(1024), nullable=True)
    candidate_source = Column(String(32), nullable=False, default=CandidateSource.SUBSCRIPTION.value)
    version = Column(Integer, nullable=False, default=1)  # compare-and-swap token
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)

    @property
    def effective_status(self) -> str:
        """Display status, computed on read so it never drifts from the raw fields"""
        return status_authority.effective_status(self).value

    @property
    def is_usable(self) -> bool:
        return status_authority.is_usable(self)

    def __repr__(self):
        return (
            f"<SubscriptionRecord user_id={self.user_id} status={self.status} "
            f"subscription={self.processor_subscription_id} version={self.version}>"
        )
