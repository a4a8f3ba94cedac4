"""Outbound calls to the payment processor (Stripe).

Every call goes through ``processor_call``: Stripe errors are translated into
``ProcessorUnavailable`` (transient, retried with capped exponential backoff)
or ``ProcessorRequestError`` (permanent, not retried), and each attempt is
bounded by the HTTP client timeout.
"""
import copy
import functools
import logging
from typing import Any, List, Optional

import stripe
from tenacity import (
    Retrying, before_sleep_log, retry_if_exception_type,
    stop_after_attempt, wait_exponential,
)

from slumber_billing.core.config import settings
from slumber_billing.core.errors import ProcessorRequestError, ProcessorUnavailable
from slumber_billing.core.metrics import processor_calls_counter

logger = logging.getLogger(__name__)


def _translate_errors(operation: str, func, *args, **kwargs):
    try:
        return func(*args, **kwargs)
    except (stripe.APIConnectionError, stripe.RateLimitError) as e:
        raise ProcessorUnavailable(operation, str(e)) from e
    except stripe.APIError as e:
        raise ProcessorUnavailable(operation, str(e)) from e
    except stripe.StripeError as e:
        http_status = getattr(e, "http_status", None) or 0
        if http_status >= 500:
            raise ProcessorUnavailable(operation, str(e)) from e
        raise ProcessorRequestError(operation, str(e)) from e


def processor_call(operation: str):
    """Wrap a ProcessorClient method with error translation and retry-with-backoff"""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            retrying = Retrying(
                stop=stop_after_attempt(max(1, self.max_attempts)),
                wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
                retry=retry_if_exception_type(ProcessorUnavailable),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True,
            )
            try:
                result = retrying(_translate_errors, operation, func, self, *args, **kwargs)
            except ProcessorUnavailable:
                processor_calls_counter.labels(operation=operation, outcome="unavailable").inc()
                raise
            except ProcessorRequestError:
                processor_calls_counter.labels(operation=operation, outcome="rejected").inc()
                raise
            processor_calls_counter.labels(operation=operation, outcome="ok").inc()
            return result
        return wrapper
    return decorator


class ProcessorClient:
    """Explicitly constructed Stripe client; pass it to the components that need it."""

    def __init__(
        self,
        api_key: str,
        timeout: float = 8.0,
        max_attempts: int = 3,
        backoff_base: float = 0.5,
        backoff_max: float = 4.0,
        client: Any = None,
    ):
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        # Stripe's own network retries are disabled; retries happen in processor_call
        self._client = client or stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout),
            max_network_retries=0,
        )

    @classmethod
    def from_settings(cls) -> "ProcessorClient":
        if not settings.STRIPE_SECRET_KEY:
            logger.error("Stripe secret key not configured.")
        return cls(
            settings.STRIPE_SECRET_KEY,
            timeout=settings.STRIPE_API_TIMEOUT,
            max_attempts=settings.STRIPE_MAX_ATTEMPTS,
            backoff_max=settings.STRIPE_BACKOFF_MAX,
        )

    def without_retries(self) -> "ProcessorClient":
        """Same client, single attempt per call (for caller-paced paths)"""
        single = copy.copy(self)
        single.max_attempts = 1
        return single

    @processor_call("retrieve_checkout_session")
    def retrieve_checkout_session(self, session_id: str) -> Any:
        return self._client.checkout.sessions.retrieve(
            session_id, params={"expand": ["subscription"]}
        )

    @processor_call("list_subscriptions")
    def list_subscriptions(self, customer_id: str) -> List[Any]:
        result = self._client.subscriptions.list(
            params={"customer": customer_id, "status": "all", "limit": 100}
        )
        return list(result.data or [])

    @processor_call("retrieve_subscription")
    def retrieve_subscription(self, subscription_id: str) -> Any:
        return self._client.subscriptions.retrieve(subscription_id)

    @processor_call("retrieve_customer")
    def retrieve_customer(self, customer_id: str) -> Any:
        return self._client.customers.retrieve(customer_id)

    @processor_call("create_portal_session")
    def create_portal_session(self, customer_id: str, return_url: str) -> Optional[str]:
        session = self._client.billing_portal.sessions.create(
            params={"customer": customer_id, "return_url": return_url}
        )
        return session.url
