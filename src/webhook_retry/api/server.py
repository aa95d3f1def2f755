from typing import Optional

import uvicorn
from fastapi import FastAPI
from loguru import logger

from webhook_retry.api.routes import router
from webhook_retry.common.config import ApiConfig
from webhook_retry.common.log import setup_logging
from webhook_retry.common.metrics import metrics, start_metrics_server


def create_app(config: ApiConfig) -> FastAPI:
    app = FastAPI(
        title="Webhook Retry API",
        description="Schedules outbound webhooks for durable delivery",
        version="0.1.0",
    )

    app.include_router(router, prefix="/tasks")

    @app.on_event("startup")
    async def startup_event():
        setup_logging(config.log_level)

        if config.metrics.enabled:
            start_metrics_server(config.metrics.port, config.metrics.host)
            logger.info(
                f"Metrics server started on {config.metrics.host}:{config.metrics.port}"
            )

        metrics.up.labels(component="api").set(1)
        logger.info(f"Webhook Retry API started on {config.host}:{config.port}")

    @app.on_event("shutdown")
    async def shutdown_event():
        from webhook_retry.api.app import close_task_store

        await close_task_store()
        metrics.up.labels(component="api").set(0)
        logger.info("Webhook Retry API shutting down")

    return app


def run_server(config: Optional[ApiConfig] = None):
    if not config:
        from webhook_retry.api.app import get_app_config

        config = get_app_config()

    app = create_app(config)

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
    )
