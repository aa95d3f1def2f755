import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from loguru import logger

from webhook_retry.common.backoff import BackoffPolicy
from webhook_retry.common.config import DispatcherConfig
from webhook_retry.common.log import setup_logging
from webhook_retry.common.metrics import metrics, start_metrics_server
from webhook_retry.common.models import BatchResult
from webhook_retry.common.store import TaskStore, create_task_store
from webhook_retry.dispatcher.dispatcher import WebhookDispatcher


_app_config: Optional[DispatcherConfig] = None
_task_store: Optional[TaskStore] = None
_dispatcher: Optional[WebhookDispatcher] = None
_shutdown_event: Optional[asyncio.Event] = None


def get_app_config() -> DispatcherConfig:
    global _app_config
    if not _app_config:
        raise RuntimeError("Application config not initialized")
    return _app_config


def get_task_store() -> TaskStore:
    global _task_store
    if not _task_store:
        raise RuntimeError("Task store not initialized")
    return _task_store


def get_dispatcher() -> WebhookDispatcher:
    global _dispatcher
    if not _dispatcher:
        raise RuntimeError("Dispatcher not initialized")
    return _dispatcher


def load_config_from_file(config_path: str) -> DispatcherConfig:
    """Load configuration from a YAML file."""
    file_path = Path(config_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(file_path, "r") as f:
        config_data = yaml.safe_load(f) or {}

    return DispatcherConfig.model_validate(config_data)


def setup_app(config: DispatcherConfig):
    """Initialize the dispatcher with the given config."""
    global _app_config, _task_store, _dispatcher, _shutdown_event

    setup_logging(config.log_level)
    config.validate_store_config()

    _task_store = create_task_store(
        store_type=config.store_type,
        sql_config=config.sql_config,
        default_max_attempts=config.default_max_attempts,
    )

    _shutdown_event = asyncio.Event()

    _dispatcher = WebhookDispatcher(
        store=_task_store,
        backoff=BackoffPolicy(config.backoff_table),
        headers=config.headers,
        timeout=config.timeout,
        batch_size=config.batch_size,
        claim_ttl=config.claim_ttl,
    )

    _app_config = config

    logger.info("Webhook Retry Dispatcher initialized")
    logger.info(f"Backoff table: {config.backoff_table}")


async def run_dispatcher():
    """Run the dispatcher timer loop until a shutdown signal arrives."""
    global _app_config, _dispatcher, _shutdown_event

    if _app_config.metrics.enabled:
        start_metrics_server(_app_config.metrics.port, _app_config.metrics.host)
        logger.info(f"Metrics server started on {_app_config.metrics.host}:{_app_config.metrics.port}")

    metrics.up.labels(component="dispatcher").set(1)

    logger.info("Webhook Retry Dispatcher started")

    try:
        await _dispatcher.run(_shutdown_event, _app_config.poll_interval)
    except Exception as e:
        logger.error(f"Dispatcher error: {e}")
    finally:
        await _dispatcher.store.close()
        metrics.up.labels(component="dispatcher").set(0)
        logger.info("Webhook Retry Dispatcher stopped")


async def run_once(limit: Optional[int] = None) -> BatchResult:
    """Process a single batch, for cron-style schedulers."""
    dispatcher = get_dispatcher()
    try:
        return await dispatcher.process_pending_batch(limit)
    finally:
        await dispatcher.store.close()


def handle_signal(sig, frame):
    """Handle termination signals."""
    global _shutdown_event
    if _shutdown_event:
        logger.info(f"Received signal {sig}, shutting down...")
        _shutdown_event.set()


@click.group()
def cli():
    """Webhook Retry Dispatcher CLI"""
    pass


@cli.command("serve")
@click.option(
    "--config",
    "-c",
    required=True,
    help="Path to configuration file",
)
def serve(config: str):
    """Poll for due webhooks until stopped."""
    try:
        config_obj = load_config_from_file(config)
        setup_app(config_obj)

        signal.signal(signal.SIGINT, handle_signal)
        signal.signal(signal.SIGTERM, handle_signal)

        asyncio.run(run_dispatcher())
    except Exception as e:
        logger.error(f"Failed to start dispatcher: {e}")
        sys.exit(1)


@cli.command("run-once")
@click.option(
    "--config",
    "-c",
    required=True,
    help="Path to configuration file",
)
@click.option(
    "--limit",
    "-n",
    type=click.IntRange(min=1),
    default=None,
    help="Maximum tasks to process",
)
def run_once_command(config: str, limit: Optional[int]):
    """Process one batch of due webhooks and exit."""
    try:
        config_obj = load_config_from_file(config)
        setup_app(config_obj)
        result = asyncio.run(run_once(limit))
    except Exception as e:
        logger.error(f"Dispatcher batch failed: {e}")
        sys.exit(1)

    click.echo(result.model_dump_json())
    if result.errors:
        sys.exit(2)


if __name__ == "__main__":
    cli()
