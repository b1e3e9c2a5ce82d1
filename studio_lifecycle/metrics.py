"""
Prometheus metrics: transitions applied/rejected (engine), audit appends, signals processed/failed (worker).
"""
from prometheus_client import Counter

# Engine: accepted status transitions
lifecycle_transitions_total = Counter(
    "lifecycle_transitions_total",
    "Total status transitions committed",
    ["entity_type", "to_status"],
)
lifecycle_rejections_total = Counter(
    "lifecycle_rejections_total",
    "Total lifecycle operations rejected with a typed error",
    ["entity_type", "error"],
)
audit_entries_total = Counter(
    "audit_entries_total",
    "Total audit entries appended (counted at record time; rolled-back units included)",
    ["action_kind"],
)

# Worker: external signal processing outcomes
signals_processed_total = Counter(
    "signals_processed_total",
    "Total external signals applied or deliberately ignored",
    ["source"],
)
signals_failed_total = Counter(
    "signals_failed_total",
    "Total signals that failed processing (retried or sent to DLQ)",
)
signals_dlq_total = Counter(
    "signals_dlq_total",
    "Total signals moved to DLQ after max retries",
)
