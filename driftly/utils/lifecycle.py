# /driftly/utils/lifecycle.py

import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from driftly.utils.logging import setup_logging
from driftly.services.db_service import db_service
from driftly.services.email_service import email_service
from driftly.services.webhook_service import webhook_client
from driftly.jobs.flow_processor import build_flow_scheduler
from driftly.config.settings import settings, validate_environment

# Startup wires the flow scheduler onto app.state so the manual trigger
# endpoints and the interval job share one instance (and one tick lock).

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup and shutdown events."""
    setup_logging()
    validate_environment(settings)

    logger.info("Application starting up...")

    await db_service.create_indexes()

    flow_scheduler = build_flow_scheduler(settings)
    app.state.flow_scheduler = flow_scheduler
    if settings.scheduler_enabled:
        flow_scheduler.start()
    else:
        logger.info("Interval scheduler disabled; flows only run on manual triggers.")

    logger.info("Application startup complete. Ready to accept requests.")

    yield  # Application is now running

    logger.info("Application shutting down...")

    flow_scheduler.stop()
    await email_service.close()
    await webhook_client.close()
    if db_service.client:
        db_service.client.close()
