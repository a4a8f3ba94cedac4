"""StripeEvent model"""
from sqlalchemy import Column, Integer, String, Boolean, Text, JSON, DateTime, Index
from datetime import datetime, timezone
from slumber_billing.models.base import Base


class StripeEvent(Base):
    """Processor webhook event log, for idempotency and replay"""
    __tablename__ = "stripe_events"
    __table_args__ = (
        Index("ix_stripe_events_processed_created_at", "processed", "created_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    event_id = Column(String(255), unique=True, nullable=False, index=True)
    event_type = Column(String(100), nullable=False, index=True)
    processed = Column(Boolean, default=False, nullable=False)
    payload = Column(JSON, nullable=False)
    error_message = Column(Text, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False)
    processed_at = Column(DateTime(timezone=True), nullable=True)
