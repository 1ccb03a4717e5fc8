"""
Operational Metrics for the Cost Pipeline

Prometheus counters for rows ingested and findings produced.
"""

from prometheus_client import Counter, Histogram

# --- Ingestion ---
INGESTION_ROWS = Counter(
    "costlens_ingestion_rows_total",
    "Total CSV rows handled by the ingestion pipeline",
    ["outcome"]  # 'processed', 'skipped'
)

# --- Aggregation ---
AGGREGATION_DURATION = Histogram(
    "costlens_aggregation_duration_seconds",
    "Duration of per-user aggregate rebuilds",
    ["aggregation_type"],
    buckets=(0.1, 0.5, 1, 5, 10, 30, 60, 120)
)

# --- Analysis ---
ANOMALIES_DETECTED = Counter(
    "costlens_anomalies_detected_total",
    "Total cost anomalies persisted",
    ["severity"]
)

RECOMMENDATIONS_GENERATED = Counter(
    "costlens_recommendations_generated_total",
    "Total recommendations persisted",
    ["type"]
)

RECOMMENDATION_RULE_FAILURES = Counter(
    "costlens_recommendation_rule_failures_total",
    "Recommendation rules that raised during evaluation",
    ["rule"]
)
