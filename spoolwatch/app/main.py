"""SpoolWatch service: printer telemetry listener plus a liveness endpoint."""

import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.responses import Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from spoolwatch.app.api.routes import health
from spoolwatch.app.core.config import Settings, settings
from spoolwatch.app.services.printer_monitor import PrinterMonitor

logger = logging.getLogger(__name__)


def log_startup_summary(config: Settings) -> None:
    logger.info("=== SpoolWatch starting ===")
    logger.info("Printer serial: %s", config.printer_serial or "NOT SET")
    logger.info(
        "MQTT mode: %s (%s)",
        "CLOUD" if config.use_cloud_mqtt else "LOCAL",
        config.cloud_mqtt_server if config.use_cloud_mqtt else config.printer_ip,
    )
    logger.info("Tracker API: %s", config.tracker_api_url)
    logger.info("API key configured: %s", "yes" if config.tracker_api_key else "NO - deductions will fail!")
    logger.info(
        "Usage strategy: %s (cloud token %s)",
        config.effective_usage_strategy,
        "configured" if config.cloud_mqtt_token else "not configured",
    )


async def _not_found(request: Request, exc: StarletteHTTPException) -> Response:
    # Wrong methods answer like unknown paths
    if exc.status_code == 405:
        exc = StarletteHTTPException(status_code=404)
    return await http_exception_handler(request, exc)


def create_app(monitor: PrinterMonitor | None = None, config: Settings = settings) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        log_startup_summary(config)
        await app.state.monitor.start()
        yield
        logger.info("Shutting down...")
        if not await app.state.monitor.stop(config.shutdown_grace_period):
            logger.warning("Forcing exit")
            os._exit(0)

    app = FastAPI(title=config.app_name, lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.monitor = monitor or PrinterMonitor(config)
    app.include_router(health.router)
    app.add_exception_handler(StarletteHTTPException, _not_found)
    return app


app = create_app()


def run():
    """Console entry point."""
    import uvicorn

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )
    uvicorn.run(
        app,
        host=settings.health_host,
        port=settings.health_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
