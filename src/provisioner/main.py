"""FastAPI application for the C6 provisioning service."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
import uvicorn

from provisioner.api.routes import provisioner_error_handler, router
from provisioner.config import load_settings
from provisioner.errors import ProvisionerError
from provisioner.services.system import SystemState
from provisioner.utils.logging import setup_logger

VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown hooks.

    Startup:
    - Load settings and initialize logger (unless a system was injected)
    - Build SystemState: partition table, flash, NVS, OTA and Wi-Fi machines
    - Restore saved Wi-Fi config, start SoftAP and station, start progress task

    Shutdown:
    - Stop the progress task
    """
    logger = logging.getLogger("provisioner")
    if app.state.system is None:
        settings = load_settings()
        logger = setup_logger("provisioner", settings.log_file, level=settings.level)
        app.state.system = SystemState(settings)

    system = app.state.system
    logger.info("Provisioner starting up...")
    system.start()
    logger.info(f"Provisioner ready on port {system.settings.port}")

    yield

    logger.info("Provisioner shutting down...")
    system.stop()


def create_app(system: Optional[SystemState] = None) -> FastAPI:
    app = FastAPI(
        title="C6 Provisioner",
        description="Wi-Fi provisioning and OTA upgrade service",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.system = system
    app.include_router(router)
    app.add_exception_handler(ProvisionerError, provisioner_error_handler)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "c6-provisioner", "version": VERSION}

    return app


app = create_app()


def main():
    """Main entry point for running the server."""
    settings = load_settings()
    setup_logger("provisioner", settings.log_file, level=settings.level)
    system = SystemState(settings)
    uvicorn.run(
        create_app(system),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()
