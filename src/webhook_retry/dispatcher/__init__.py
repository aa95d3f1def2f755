"""Dispatcher component for the webhook retry system."""

from webhook_retry.dispatcher.app import (
    cli,
    get_app_config,
    get_dispatcher,
    get_task_store,
    load_config_from_file,
    run_dispatcher,
    run_once,
    setup_app,
)
from webhook_retry.dispatcher.dispatcher import WebhookDispatcher

__all__ = [
    "get_app_config",
    "get_dispatcher",
    "get_task_store",
    "load_config_from_file",
    "setup_app",
    "run_dispatcher",
    "run_once",
    "cli",
    "WebhookDispatcher",
]
