"""Pydantic schemas for subscriptions"""
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, model_validator

from slumber_billing.services.verification import (
    CheckoutStrategy, CustomerStrategy, Strategy, SubscriptionStrategy,
)


class VerifyPaymentRequest(BaseModel):
    checkout_reference: Optional[str] = None
    user_id: Optional[str] = None
    processor_customer_id: Optional[str] = None
    subscription_reference: Optional[str] = None

    @model_validator(mode="after")
    def require_identifier(self):
        if not (self.checkout_reference or self.subscription_reference
                or (self.user_id and self.processor_customer_id)):
            raise ValueError(
                "Provide checkout_reference, subscription_reference, "
                "or both user_id and processor_customer_id"
            )
        return self

    def strategies(self) -> List[Strategy]:
        strategies: List[Strategy] = []
        if self.checkout_reference:
            strategies.append(CheckoutStrategy(self.checkout_reference))
        if self.user_id and self.processor_customer_id:
            strategies.append(CustomerStrategy(self.user_id, self.processor_customer_id))
        if self.subscription_reference:
            strategies.append(SubscriptionStrategy(self.subscription_reference))
        return strategies


class VerifyPaymentResponse(BaseModel):
    success: bool
    status: str
    payment_failed: bool = False
    cancel_at_period_end: bool = False
    current_period_end: Optional[datetime] = None
    error: Optional[str] = None


class SubscriptionRecordOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    user_id: str
    processor_customer_id: Optional[str] = None
    processor_subscription_id: Optional[str] = None
    status: str
    effective_status: str
    is_usable: bool
    cancel_at_period_end: bool = False
    canceled_at: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    management_portal_url: Optional[str] = None
    updated_at: Optional[datetime] = None


class PollResponse(BaseModel):
    available: bool
    reason: Optional[str] = None
    subscription: Optional[SubscriptionRecordOut] = None


class PortalResponse(BaseModel):
    url: str
