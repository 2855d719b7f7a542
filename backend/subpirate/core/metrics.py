"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name, documentation, labelnames=()):
    # Reuse the collector when the module is imported twice (e.g. test reloads)
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Webhook metrics
webhook_events_counter = _counter(
    'subpirate_webhook_events_total',
    'Total number of verified Stripe webhook deliveries',
    ['event_type', 'outcome']
)

webhook_signature_failures_counter = _counter(
    'subpirate_webhook_signature_failures_total',
    'Total number of webhook deliveries rejected by signature verification'
)

# Outbound provider calls
stripe_retries_counter = _counter(
    'subpirate_stripe_retries_total',
    'Total number of retried Stripe API calls',
    ['operation']
)

# Catalog sync metrics
catalog_sync_runs_counter = _counter(
    'subpirate_catalog_sync_runs_total',
    'Total number of catalog sync runs',
    ['status']
)

catalog_sync_operations_counter = _counter(
    'subpirate_catalog_sync_operations_total',
    'Total number of catalog sync writes',
    ['entity', 'operation', 'status']
)
