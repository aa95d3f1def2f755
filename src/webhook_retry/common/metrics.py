import time
from functools import wraps
from typing import Callable, Dict, Optional, Union

from loguru import logger
from prometheus_client import REGISTRY, Counter, Gauge, Histogram, start_http_server


class MetricsRegistry:
    def __init__(self, registry=None):
        # Use a provided registry or the default one
        self.registry = registry or REGISTRY

        # Producer metrics
        self.tasks_enqueued_total = Counter(
            "webhook_retry_tasks_enqueued_total",
            "Total number of webhook tasks enqueued",
            ["store"],
            registry=self.registry,
        )
        self.enqueue_errors = Counter(
            "webhook_retry_enqueue_errors",
            "Total number of errors persisting new webhook tasks",
            ["store"],
            registry=self.registry,
        )

        # Dispatcher metrics
        self.batch_size = Histogram(
            "webhook_retry_batch_size",
            "Number of tasks claimed per dispatcher batch",
            buckets=(0, 1, 5, 10, 25, 50, 100, 250, 500),
            registry=self.registry,
        )
        self.claim_conflicts = Counter(
            "webhook_retry_claim_conflicts_total",
            "Due tasks skipped because another dispatcher claimed them first",
            registry=self.registry,
        )
        self.delivery_total = Counter(
            "webhook_retry_delivery_total",
            "Total number of delivery attempts by outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.delivery_errors = Counter(
            "webhook_retry_delivery_errors",
            "Total number of failed delivery attempts",
            ["status_code"],
            registry=self.registry,
        )
        self.retry_scheduled_total = Counter(
            "webhook_retry_retry_scheduled_total",
            "Total number of retries scheduled",
            registry=self.registry,
        )
        self.failed_permanently_total = Counter(
            "webhook_retry_failed_permanently_total",
            "Total number of tasks that exhausted their attempts",
            registry=self.registry,
        )
        self.delivery_latency = Histogram(
            "webhook_retry_delivery_seconds",
            "Time spent delivering a single webhook",
            registry=self.registry,
        )
        self.batch_latency = Histogram(
            "webhook_retry_batch_seconds",
            "Time spent processing one dispatcher batch",
            ["store"],
            registry=self.registry,
        )

        # Common metrics
        self.up = Gauge(
            "webhook_retry_up",
            "Whether the webhook retry component is up",
            ["component"],
            registry=self.registry,
        )


# Global metrics registry
metrics = MetricsRegistry()


def start_metrics_server(port: int = 9090, host: str = "127.0.0.1"):
    """Start the Prometheus metrics server."""
    start_http_server(port, host)


def measure_time(
    metric: Histogram, labels: Optional[Union[Dict[str, str], Callable]] = None
) -> Callable:
    """Decorator to measure the execution time of a coroutine."""

    def decorator(func):
        @wraps(func)
        async def wrapper(*args, **kwargs):
            labels_dict = {}
            if callable(labels) and args:
                # Label factories receive the bound instance
                try:
                    labels_dict = labels(args[0])
                except Exception as e:
                    logger.error(f"Error getting labels from function: {e}")
            elif isinstance(labels, dict):
                labels_dict = labels

            start_time = time.time()
            try:
                return await func(*args, **kwargs)
            finally:
                duration = time.time() - start_time
                try:
                    if labels_dict:
                        metric.labels(**labels_dict).observe(duration)
                    else:
                        metric.observe(duration)
                except Exception as e:
                    logger.error(f"Error recording metric: {e}")

        return wrapper

    return decorator
