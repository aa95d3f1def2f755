import sys
from pathlib import Path
from typing import Optional

import click
import yaml
from loguru import logger

from webhook_retry.api.server import run_server
from webhook_retry.common.config import ApiConfig
from webhook_retry.common.log import setup_logging
from webhook_retry.common.store import TaskStore, create_task_store


_app_config: Optional[ApiConfig] = None
_task_store: Optional[TaskStore] = None


def get_app_config() -> ApiConfig:
    global _app_config
    if not _app_config:
        raise RuntimeError("Application config not initialized")
    return _app_config


def get_task_store() -> TaskStore:
    global _task_store
    if not _task_store:
        raise RuntimeError("Task store not initialized")
    return _task_store


async def close_task_store():
    global _task_store
    if _task_store:
        await _task_store.close()


def load_config_from_file(config_path: str) -> ApiConfig:
    """Load configuration from a YAML file."""
    file_path = Path(config_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(file_path, "r") as f:
        config_data = yaml.safe_load(f) or {}

    return ApiConfig.model_validate(config_data)


def setup_app(config: ApiConfig):
    """Initialize the API with the given config."""
    global _app_config, _task_store

    setup_logging(config.log_level)
    config.validate_store_config()

    _task_store = create_task_store(
        store_type=config.store_type,
        sql_config=config.sql_config,
        default_max_attempts=config.default_max_attempts,
    )

    _app_config = config

    logger.info("Webhook Retry API initialized")


@click.group()
def cli():
    """Webhook Retry API CLI"""
    pass


@cli.command("serve")
@click.option(
    "--config",
    "-c",
    required=True,
    help="Path to configuration file",
)
def serve(config: str):
    """Start the producer API server."""
    try:
        config_obj = load_config_from_file(config)
        setup_app(config_obj)
        run_server(config_obj)
    except Exception as e:
        logger.error(f"Failed to start API: {e}")
        sys.exit(1)


if __name__ == "__main__":
    cli()
