"""
Prometheus metrics for the annotation review service.
"""

from prometheus_client import Counter, Histogram, Gauge


# ── Generation Jobs ──────────────────────────────────────────
generation_jobs_started_total = Counter(
    "generation_jobs_started_total",
    "Total annotation generation jobs started",
)

generation_jobs_completed_total = Counter(
    "generation_jobs_completed_total",
    "Total generation jobs that produced pending items",
)

generation_jobs_failed_total = Counter(
    "generation_jobs_failed_total",
    "Total generation jobs marked failed",
    ["reason"],
)

generation_duration_seconds = Histogram(
    "generation_duration_seconds",
    "Time from job start to items persisted",
    buckets=[1, 5, 10, 30, 60, 120, 300],
)

generation_jobs_active = Gauge(
    "generation_jobs_active",
    "Number of generation tasks currently running in this process",
)

annotations_generated_total = Counter(
    "annotations_generated_total",
    "Candidate annotation items produced by the vision model",
    ["annotation_type"],
)

# ── External Vision API ──────────────────────────────────────
vision_api_latency_seconds = Histogram(
    "vision_api_latency_seconds",
    "Latency of vision model calls",
    ["engine_name"],
    buckets=[0.5, 1, 2, 5, 10, 30, 60, 120],
)

vision_api_errors_total = Counter(
    "vision_api_errors_total",
    "Vision model calls that raised",
    ["engine_name"],
)

# ── Review Workflow ──────────────────────────────────────────
review_actions_total = Counter(
    "review_actions_total",
    "Reviewer decisions applied",
    ["action"],
)

review_conflicts_total = Counter(
    "review_conflicts_total",
    "Transitions refused because the item was missing or already processed",
    ["action"],
)

review_queue_depth = Gauge(
    "review_queue_depth",
    "Current number of annotation items by status",
    ["status"],
)

# ── Learning ─────────────────────────────────────────────────
feedback_events_total = Counter(
    "feedback_events_total",
    "Reinforcement feedback events applied to learned patterns",
    ["feedback_type"],
)

feedback_failures_total = Counter(
    "feedback_failures_total",
    "Reinforcement feedback events that failed and were dropped",
    ["feedback_type"],
)
