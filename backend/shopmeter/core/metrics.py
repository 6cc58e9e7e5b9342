"""Prometheus metrics for the application"""
from prometheus_client import Counter, REGISTRY


def _counter(name: str, documentation: str, labelnames=()):
    # Re-imports (tests, reloads) must reuse the already registered collector
    try:
        return Counter(name, documentation, labelnames)
    except ValueError:
        return REGISTRY._names_to_collectors.get(name)


# Usage metrics
usage_units_deducted_counter = _counter(
    'shopmeter_usage_units_deducted_total',
    'Total number of requests deducted from allowance buckets',
    ['service', 'bucket']
)

insufficient_credits_counter = _counter(
    'shopmeter_insufficient_credits_total',
    'Total number of usage reports denied for lack of credits',
    ['service']
)

package_expired_counter = _counter(
    'shopmeter_credit_packages_expired_total',
    'Total number of credit packages exhausted'
)

# Subscription metrics
subscription_transitions_counter = _counter(
    'shopmeter_subscription_transitions_total',
    'Total number of subscription status transitions',
    ['status']
)

# Notification metrics
notifications_sent_counter = _counter(
    'shopmeter_notifications_sent_total',
    'Total number of notifications recorded',
    ['type']
)

notifications_suppressed_counter = _counter(
    'shopmeter_notifications_suppressed_total',
    'Total number of notifications suppressed by the dedup window',
    ['type']
)

emails_failed_counter = _counter(
    'shopmeter_emails_failed_total',
    'Total number of notification emails that failed',
    ['code']
)

# Transaction metrics
transaction_retries_counter = _counter(
    'shopmeter_transaction_retries_total',
    'Total number of transaction retries after serialization conflicts',
    ['operation']
)

transaction_failures_counter = _counter(
    'shopmeter_transaction_failures_total',
    'Total number of transactions that failed at the store level',
    ['operation']
)
