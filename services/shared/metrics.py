"""
Shared Prometheus metrics registry.

The rule evaluator, notification service and channel dispatchers increment
these; cron_api exposes them through prometheus_client.generate_latest().
"""

from prometheus_client import Counter, Gauge, Histogram

# Rule evaluation
rule_evaluations_total = Counter(
    "proactive_rule_evaluations_total",
    "Total behavior rule evaluations",
    ["result"],  # triggered | not_triggered | cooldown | error
)

evaluation_passes_total = Counter(
    "proactive_evaluation_passes_total",
    "Total evaluation passes by outcome",
    ["outcome"],  # completed | lock_skipped | collect_failed
)

evaluation_pass_duration_seconds = Histogram(
    "proactive_evaluation_pass_duration_seconds",
    "Duration of one rule evaluation pass in seconds",
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0],
)

entities_abandoned_total = Counter(
    "proactive_entities_abandoned_total",
    "Entities not started before the pass deadline",
)

# Notification lifecycle
notifications_queued_total = Counter(
    "proactive_notifications_queued_total",
    "Queue attempts by outcome",
    ["result"],  # queued | deferred | skipped | rejected
)

notification_deliveries_total = Counter(
    "proactive_notification_deliveries_total",
    "Channel send attempts by channel and result",
    ["channel", "result"],  # delivered | retry | failed
)

notifications_expired_total = Counter(
    "proactive_notifications_expired_total",
    "Notifications aged out of the retry window",
)

notification_queue_depth = Gauge(
    "proactive_notification_queue_depth",
    "Due QUEUED notifications picked up by the last sweep",
)

sweep_duration_seconds = Histogram(
    "proactive_sweep_duration_seconds",
    "Duration of one dispatch sweep in seconds",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)
