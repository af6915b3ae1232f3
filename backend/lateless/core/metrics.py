"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name: str, documentation: str, labelnames=()):
    # Re-importing the module (tests, reloads) must not register twice
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook metrics
webhook_events_counter = _counter(
    'lateless_stripe_webhook_events_total',
    'Total number of Stripe webhook deliveries by event type and outcome',
    ['event_type', 'outcome']
)

# Invoice metrics
invoice_transitions_counter = _counter(
    'lateless_invoice_status_transitions_total',
    'Total number of invoice status transitions applied from payment events',
    ['from_status', 'to_status']
)

# Checkout metrics
checkout_sessions_counter = _counter(
    'lateless_checkout_sessions_total',
    'Total number of invoice checkout attempts by outcome',
    ['outcome']
)
