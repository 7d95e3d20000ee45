"""Prometheus metrics for the application"""
from prometheus_client import Counter, Gauge, REGISTRY

# Webhook metrics
try:
    webhook_events_counter = Counter(
        'sadqa_webhook_events_total',
        'Total number of gateway webhook events received',
        ['event_type', 'outcome']
    )
except ValueError:
    webhook_events_counter = REGISTRY._names_to_collectors.get('sadqa_webhook_events_total')

try:
    webhook_signature_failures_counter = Counter(
        'sadqa_webhook_signature_failures_total',
        'Total number of webhook deliveries rejected for a bad signature'
    )
except ValueError:
    webhook_signature_failures_counter = REGISTRY._names_to_collectors.get('sadqa_webhook_signature_failures_total')

try:
    duplicate_events_counter = Counter(
        'sadqa_duplicate_webhook_events_total',
        'Total number of webhook deliveries dropped as already claimed'
    )
except ValueError:
    duplicate_events_counter = REGISTRY._names_to_collectors.get('sadqa_duplicate_webhook_events_total')

# Lifecycle metrics
try:
    subscription_transitions_counter = Counter(
        'sadqa_subscription_transitions_total',
        'Total number of subscription state transitions applied',
        ['event', 'to_state']
    )
except ValueError:
    subscription_transitions_counter = REGISTRY._names_to_collectors.get('sadqa_subscription_transitions_total')

try:
    payment_status_changes_counter = Counter(
        'sadqa_payment_status_changes_total',
        'Total number of payment record status changes',
        ['to_status']
    )
except ValueError:
    payment_status_changes_counter = REGISTRY._names_to_collectors.get('sadqa_payment_status_changes_total')

# Reconciliation metrics
try:
    recheck_results_counter = Counter(
        'sadqa_payment_rechecks_total',
        'Total number of payment recheck attempts',
        ['outcome']
    )
except ValueError:
    recheck_results_counter = REGISTRY._names_to_collectors.get('sadqa_payment_rechecks_total')

try:
    bulk_rechecks_in_flight_gauge = Gauge(
        'sadqa_bulk_rechecks_in_flight',
        'Number of bulk recheck jobs currently running'
    )
except ValueError:
    bulk_rechecks_in_flight_gauge = REGISTRY._names_to_collectors.get('sadqa_bulk_rechecks_in_flight')

# Scheduler metrics
try:
    scheduler_runs_counter = Counter(
        'sadqa_scheduler_runs_total',
        'Total number of scheduler job runs',
        ['job', 'status']
    )
except ValueError:
    scheduler_runs_counter = REGISTRY._names_to_collectors.get('sadqa_scheduler_runs_total')

# Error capture
try:
    captured_errors_counter = Counter(
        'sadqa_captured_errors_total',
        'Total number of errors captured to the observability sink',
        ['source']
    )
except ValueError:
    captured_errors_counter = REGISTRY._names_to_collectors.get('sadqa_captured_errors_total')

try:
    active_subscriptions_gauge = Gauge(
        'sadqa_subscriptions',
        'Number of subscriptions by status',
        ['status']
    )
except ValueError:
    active_subscriptions_gauge = REGISTRY._names_to_collectors.get('sadqa_subscriptions')


def update_subscription_status_gauge(db):
    """Refresh the per-status subscription gauge from the database"""
    from sqlalchemy import func
    from sadqa.models.subscription import Subscription, SUBSCRIPTION_STATUSES

    counts = dict(
        db.query(Subscription.status, func.count(Subscription.id))
        .group_by(Subscription.status)
        .all()
    )
    for status in SUBSCRIPTION_STATUSES:
        active_subscriptions_gauge.labels(status=status).set(counts.get(status, 0))
