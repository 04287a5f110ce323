# campaign_engine/common/metrics.py
from prometheus_client import Counter, Histogram

# -------------------------------------------------------
#  Prometheus metrics definitions
# -------------------------------------------------------

JOBS_ENQUEUED = Counter(
    "outreach_jobs_enqueued_total",
    "Jobs handed to the queue backend",
    ["queue", "job_name"],
)
JOBS_COMPLETED = Counter(
    "outreach_jobs_completed_total",
    "Jobs that finished successfully",
    ["queue", "job_name"],
)
JOBS_FAILED = Counter(
    "outreach_jobs_failed_total",
    "Failed job attempts (final=true once retries are exhausted)",
    ["queue", "job_name", "final"],
)
JOB_LATENCY = Histogram(
    "outreach_job_latency_seconds",
    "Handler execution time per job attempt (seconds)",
    ["queue", "job_name"],
    buckets=(0.005, 0.01, 0.05, 0.1, 0.3, 0.5, 1.0, 3.0, 5.0, 30.0),
)
TRANSITIONS = Counter(
    "outreach_transition_outcomes_total",
    "Interpreter outcomes by reason",
    ["reason"],
)
RECOVERY_ACTIONS = Counter(
    "outreach_recovery_actions_total",
    "Scheduled actions handled by startup recovery",
    ["outcome"],
)
EVENTS_INGESTED = Counter(
    "outreach_events_ingested_total",
    "Real message events recorded",
    ["event_type"],
)
HTTP_REQUESTS = Counter(
    "outreach_http_requests_total",
    "API requests by method, path and status class",
    ["method", "path", "status"],
)
HTTP_LATENCY = Histogram(
    "outreach_http_latency_seconds",
    "API request latency (seconds)",
    buckets=(0.01, 0.05, 0.1, 0.3, 0.5, 1.0, 3.0),
)
