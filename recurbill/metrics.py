"""Prometheus metrics definitions and duration measurement decorator.

This module defines Histogram metrics for the schedule runner and the batch
job, a Counter of run outcomes, and a decorator to measure function
execution durations using these metrics.
"""

from functools import wraps

from prometheus_client import Counter, Histogram

schedule_run_duration_seconds = Histogram(
    "schedule_run_duration_seconds", "Duration of a single scheduled billing run"
)
billing_batch_duration_seconds = Histogram(
    "billing_batch_duration_seconds", "Duration of the due-schedules batch job"
)
schedule_run_outcomes_total = Counter(
    "schedule_run_outcomes_total",
    "Scheduled billing run results by outcome",
    ["outcome"],
)
invoice_send_failures_total = Counter(
    "invoice_send_failures_total", "Auto-send attempts that did not deliver"
)


def measure_duration(metric):
    """Decorator to measure execution duration of a function using the provided Prometheus Histogram metric.

    Args:
        metric (Histogram): Prometheus Histogram to record execution time.

    Returns:
        Callable: A decorator that wraps a function to measure and record its execution duration.
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            with metric.time():
                return func(*args, **kwargs)

        return wrapper

    return decorator
