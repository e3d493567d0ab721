"""
Prometheus metrics for monitoring the bridge.
"""
from prometheus_client import Counter, Histogram, Gauge, Info, REGISTRY
from functools import wraps
import inspect
import time
from typing import Callable, Any

from deskbridge.config import settings

# --- Helper to deduplicate metrics on reload ---
def get_or_create_metric(metric_type, name, documentation, labels=None, **kwargs):
    """Safely get an existing metric or create a new one to avoid duplication errors."""
    try:
        if labels:
            return metric_type(name, documentation, labels, **kwargs)
        else:
            return metric_type(name, documentation, **kwargs)
    except ValueError:
        try:
            REGISTRY.unregister(REGISTRY._names_to_collectors[name])
        except (KeyError, AttributeError):
            pass
        if labels:
            return metric_type(name, documentation, labels, **kwargs)
        else:
            return metric_type(name, documentation, **kwargs)

# --- Application Info ---
app_info = get_or_create_metric(Info, "deskbridge", "Deskbridge application information")
app_info.info({
    "version": "1.0.0",
    "environment": settings.environment,
})

# --- Request Metrics ---
http_requests_total = get_or_create_metric(Counter,
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"]
)

http_request_duration_seconds = get_or_create_metric(Histogram,
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"]
)

# --- Interaction Metrics ---
events_total = get_or_create_metric(Counter,
    "canvas_events_total",
    "Inbound canvas events by action and transition kind",
    ["action", "transition"]  # immediate, deferred, error, fallback
)

deadline_fallbacks_total = get_or_create_metric(Counter,
    "deadline_fallbacks_total",
    "Replies synthesized because the handler missed the deadline",
    ["action"]
)

late_results_total = get_or_create_metric(Counter,
    "late_handler_results_total",
    "Handler results that arrived after the reply was already sent",
    ["transition"]
)

# --- Upstream Metrics ---
upstream_requests_total = get_or_create_metric(Counter,
    "upstream_requests_total",
    "Upstream HTTP calls",
    ["service", "outcome"]  # ok, rejected, transient
)

upstream_request_duration_seconds = get_or_create_metric(Histogram,
    "upstream_request_duration_seconds",
    "Upstream call duration in seconds",
    ["service"]
)

upstream_retries_total = get_or_create_metric(Counter,
    "upstream_retries_total",
    "Upstream retries after a transient failure",
    ["service"]
)

# --- Background Work Metrics ---
background_tasks_total = get_or_create_metric(Counter,
    "background_tasks_total",
    "Detached background tasks",
    ["kind", "outcome"]  # create_ticket/merge_ticket, ok/failed
)

active_background_tasks = get_or_create_metric(Gauge,
    "active_background_tasks",
    "Background tasks currently running"
)

notifications_failed_total = get_or_create_metric(Counter,
    "notifications_failed_total",
    "Completion notes that could not be posted"
)

transcript_build_duration_seconds = get_or_create_metric(Histogram,
    "transcript_build_duration_seconds",
    "Time spent rendering a conversation transcript"
)

# --- System Metrics ---
active_requests = get_or_create_metric(Gauge,
    "active_requests",
    "Number of active requests being processed"
)


# --- Decorator for timing functions ---
def track_time(metric: Histogram, labels: dict[str, str] | None = None):
    """
    Decorator to track function execution time.

    Args:
        metric: Prometheus Histogram metric
        labels: Optional labels to add to the metric
    """
    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            start_time = time.time()
            try:
                return await func(*args, **kwargs)
            finally:
                duration = time.time() - start_time
                if labels:
                    metric.labels(**labels).observe(duration)
                else:
                    metric.observe(duration)

        @wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            start_time = time.time()
            try:
                return func(*args, **kwargs)
            finally:
                duration = time.time() - start_time
                if labels:
                    metric.labels(**labels).observe(duration)
                else:
                    metric.observe(duration)

        if inspect.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator
