"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name: str, documentation: str, labels):
    # Re-importing the module (tests, reloads) must not register twice
    try:
        return Counter(name, documentation, labels)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook metrics
webhook_events_counter = _counter(
    'slumber_webhook_events_total',
    'Total number of processor webhook events received',
    ['event_type', 'outcome']
)

# Reconciliation metrics
reconcile_counter = _counter(
    'slumber_reconcile_total',
    'Total number of reconciliation decisions',
    ['source', 'outcome']
)

# Outbound processor calls
processor_calls_counter = _counter(
    'slumber_processor_calls_total',
    'Total number of outbound payment processor calls',
    ['operation', 'outcome']
)

# Verification metrics
verification_counter = _counter(
    'slumber_verification_total',
    'Total number of checkout verification attempts',
    ['strategy', 'outcome']
)

# Polling metrics
polling_counter = _counter(
    'slumber_polling_total',
    'Total number of polling fallback checks',
    ['outcome']
)
