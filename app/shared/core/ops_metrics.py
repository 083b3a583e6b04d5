"""
Operational Metrics for the dunning engine and its retry queue.

Prometheus counters/histograms for recovery health dashboards:
how many invoices recover, how many subscriptions are lost to
non-payment, and how healthy the durable queue is.
"""

from prometheus_client import Counter, Histogram, Gauge

# --- Dunning Decisions ---
DUNNING_DECISIONS_TOTAL = Counter(
    "rcommerce_dunning_decisions_total",
    "Dunning engine decisions by outcome",
    ["operation", "decision"],
)

DUNNING_NOOPS_TOTAL = Counter(
    "rcommerce_dunning_noops_total",
    "Engine calls resolved to NoOp, by reason (races, stale jobs, resolved invoices)",
    ["reason"],
)

# --- Gateway ---
GATEWAY_CHARGES_TOTAL = Counter(
    "rcommerce_gateway_charges_total",
    "Payment gateway charge attempts by provider and outcome",
    ["provider", "outcome"],
)

GATEWAY_CHARGE_DURATION = Histogram(
    "rcommerce_gateway_charge_duration_seconds",
    "Latency of payment gateway charge calls",
    ["provider"],
    buckets=(0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60),
)

# --- Notifications ---
DUNNING_NOTIFICATIONS_TOTAL = Counter(
    "rcommerce_dunning_notifications_total",
    "Dunning notifications by type and outcome (enqueued, deduplicated, failed)",
    ["notification_type", "outcome"],
)

# --- Queue & Scheduling Metrics ---
BACKGROUND_JOBS_ENQUEUED = Counter(
    "rcommerce_jobs_enqueued_total",
    "Total number of background jobs enqueued",
    ["job_type"],
)

BACKGROUND_JOB_DURATION = Histogram(
    "rcommerce_job_duration_seconds",
    "Duration of background job execution",
    ["job_type", "status"],
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120, 300),
)

STALE_LEASES_RECLAIMED = Counter(
    "rcommerce_jobs_stale_leases_reclaimed_total",
    "Jobs returned to pending after their worker lease expired",
)

BACKGROUND_JOBS_PENDING = Gauge(
    "rcommerce_jobs_pending_count",
    "Current number of pending background jobs",
    ["job_type"],
)
