"""Common utilities and models for the webhook retry system."""

from webhook_retry.common.backoff import BackoffPolicy
from webhook_retry.common.config import (
    ApiConfig,
    BaseConfig,
    DispatcherConfig,
    MetricsConfig,
    SQLStoreConfig,
    StoreType,
)
from webhook_retry.common.log import setup_logging
from webhook_retry.common.metrics import (
    MetricsRegistry,
    measure_time,
    metrics,
    start_metrics_server,
)
from webhook_retry.common.models import (
    BatchResult,
    DeliveryResult,
    EnqueueRequest,
    TaskStatus,
    WebhookTask,
)
from webhook_retry.common.store import (
    InMemoryTaskStore,
    SQLTaskStore,
    TaskStore,
    create_task_store,
)

__all__ = [
    # Backoff
    "BackoffPolicy",
    # Config
    "ApiConfig",
    "BaseConfig",
    "DispatcherConfig",
    "MetricsConfig",
    "SQLStoreConfig",
    "StoreType",
    # Logging
    "setup_logging",
    # Models
    "BatchResult",
    "DeliveryResult",
    "EnqueueRequest",
    "TaskStatus",
    "WebhookTask",
    # Store
    "InMemoryTaskStore",
    "SQLTaskStore",
    "TaskStore",
    "create_task_store",
    # Metrics
    "MetricsRegistry",
    "metrics",
    "measure_time",
    "start_metrics_server",
]
