"""
Shared Prometheus Metrics for Scheduler Service
"""
from prometheus_client import Counter, Histogram

# Total scheduled job runs
SCHEDULER_JOB_RUNS = Counter(
    "costlens_scheduler_job_runs_total",
    "Total number of scheduled job runs",
    ["job_name", "status"]
)

# Duration of scheduled jobs
SCHEDULER_JOB_DURATION = Histogram(
    "costlens_scheduler_job_duration_seconds",
    "Duration of scheduled jobs in seconds",
    ["job_name"],
    buckets=[1, 5, 10, 30, 60, 120, 300, 600, 1800]
)

# Per-user pipeline failures inside a nightly run
SCHEDULER_USER_FAILURES = Counter(
    "costlens_scheduler_user_failures_total",
    "Users whose nightly processing raised",
    ["stage"]
)
