"""Exception types shared by the ingestion paths and the reconciler"""
from typing import Optional


class BillingError(Exception):
    """Base class for subscription sync errors"""


class WebhookSignatureError(BillingError):
    """Webhook body failed signature verification (never retryable)"""


class InvalidWebhookPayload(BillingError):
    """Webhook body could not be parsed into an event"""


class UnmappedCustomer(BillingError):
    """No user is linked to the processor customer referenced by an event.

    This is a data-integrity problem that needs manual follow-up, so callers
    acknowledge the event instead of asking the sender to retry.
    """

    def __init__(self, customer_id: Optional[str], event_type: Optional[str] = None):
        self.customer_id = customer_id
        self.event_type = event_type
        super().__init__(f"No user linked to customer {customer_id} (event {event_type})")


class ProcessorUnavailable(BillingError):
    """Transient processor failure (timeout, 5xx, connection, rate limit)"""

    retryable = True

    def __init__(self, operation: str, message: str = ""):
        self.operation = operation
        super().__init__(f"{operation}: {message}" if message else operation)


class ProcessorRequestError(BillingError):
    """Processor rejected the request (unknown id, invalid parameters)"""

    retryable = False

    def __init__(self, operation: str, message: str = ""):
        self.operation = operation
        super().__init__(f"{operation}: {message}" if message else operation)


class OwnershipMismatch(BillingError):
    """Identifiers presented for verification belong to a different user"""


class ReconcileBusy(BillingError):
    """Per-user reconcile lock could not be obtained within the bounded wait"""

    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__(f"Reconciliation for user {user_id} is busy")


class StoreConflict(BillingError):
    """Conditional write kept losing to concurrent writers"""

    def __init__(self, user_id: str, attempts: int):
        self.user_id = user_id
        self.attempts = attempts
        super().__init__(f"Conditional write for user {user_id} conflicted {attempts} times")
