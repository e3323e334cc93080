from prometheus_client import Counter, Histogram

REQUEST_COUNT = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)
REQUEST_LATENCY = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "path", "status"],
)

WEBHOOK_EVENTS = Counter(
    "billing_webhook_events_total",
    "Inbound payment processor events by outcome",
    ["event_type", "outcome"],
)
WEBHOOK_PROCESSING_LATENCY = Histogram(
    "billing_webhook_processing_seconds",
    "Time spent dispatching an inbound payment processor event",
    ["event_type"],
)

JOB_DURATION = Histogram(
    "job_duration_seconds",
    "Background job duration",
    ["task", "status"],
)


def observe_webhook(event_type: str, outcome: str) -> None:
    WEBHOOK_EVENTS.labels(event_type=event_type, outcome=outcome).inc()


def observe_job(task_name: str, status: str, duration: float) -> None:
    JOB_DURATION.labels(task=task_name, status=status).observe(duration)
