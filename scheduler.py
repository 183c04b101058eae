# /scheduler.py

import asyncio
import logging

from driftly.config.settings import settings, validate_environment
from driftly.jobs.flow_processor import build_flow_scheduler
from driftly.services.db_service import db_service
from driftly.services.email_service import email_service
from driftly.services.webhook_service import webhook_client
from driftly.utils.logging import setup_logging

# Standalone worker: runs the flow tick on its interval without the API.
# Several copies may run side by side; the per-contact lease keeps them apart.

logger = logging.getLogger("SchedulerService")


async def main():
    setup_logging()
    validate_environment(settings)
    await db_service.create_indexes()

    flow_scheduler = build_flow_scheduler(settings)
    flow_scheduler.start()
    logger.info(
        f"Scheduled job: process_due_contacts (every {settings.scheduler_interval_minutes} minutes). "
        "Press Ctrl+C to exit."
    )

    # Do not wait a full interval for the first run.
    await flow_scheduler.run_tick()

    try:
        while True:
            await asyncio.sleep(3600)
    finally:
        flow_scheduler.stop()
        await email_service.close()
        await webhook_client.close()
        db_service.client.close()


if __name__ == "__main__":
    asyncio.run(main())
