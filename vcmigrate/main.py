"""Main application entry point."""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request

from .core.config import settings
from .core.config_validation import run_config_checks
from .api.routes import router, APP_VERSION
from .services.container import build_services

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager."""
    logger.info("Starting %s", settings.app_name)
    logger.info("Version: %s", APP_VERSION)
    logger.info("Debug mode: %s", settings.debug)

    config_result = run_config_checks()

    if config_result.has_errors:
        for issue in config_result.errors:
            logger.error("Configuration error: %s", issue.message)
            if issue.hint:
                logger.error("Hint: %s", issue.hint)

    if config_result.has_warnings:
        for issue in config_result.warnings:
            logger.warning("Configuration warning: %s", issue.message)
            if issue.hint:
                logger.warning("Hint: %s", issue.hint)

    services = build_services()
    app.state.services = services
    await services.start()
    logger.info(
        "Process manager ready (executables: %s)",
        ", ".join(settings.get_powershell_executables_list()),
    )

    try:
        yield
    finally:
        logger.info("Shutting down application")
        await services.shutdown()
        app.state.services = None
        logger.info("Application stopped")


app = FastAPI(
    title=settings.app_name,
    version=APP_VERSION,
    description="Persistent PowerShell orchestration for vCenter migrations",
    lifespan=lifespan,
)


@app.middleware("http")
async def audit_middleware(request: Request, call_next):
    """Log each request with its duration."""
    start_time = time.time()
    client_ip = request.client.host if request.client else "unknown"
    logger.info("Request started: %s %s from %s", request.method, request.url.path, client_ip)

    try:
        response = await call_next(request)
    except Exception:
        logger.exception(
            "Request failed: %s %s after %.3fs",
            request.method,
            request.url.path,
            time.time() - start_time,
        )
        raise

    logger.info(
        "Request completed: %s %s - Status: %s - Duration: %.3fs",
        request.method,
        request.url.path,
        response.status_code,
        time.time() - start_time,
    )
    return response


app.include_router(router)


def main() -> None:
    uvicorn.run(
        "vcmigrate.main:app",
        host=settings.api_host,
        port=settings.api_port,
        log_level="debug" if settings.debug else "info",
    )


if __name__ == "__main__":
    main()
