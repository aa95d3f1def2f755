"""Producer HTTP API for the webhook retry system."""

from webhook_retry.api.app import (
    cli,
    get_app_config,
    get_task_store,
    load_config_from_file,
    setup_app,
)
from webhook_retry.api.server import create_app, run_server

__all__ = [
    "get_app_config",
    "get_task_store",
    "load_config_from_file",
    "setup_app",
    "cli",
    "create_app",
    "run_server",
]
