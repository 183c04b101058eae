# /driftly/utils/dependencies.py

import secrets
import structlog
from fastapi import Request, HTTPException, status

from driftly.config.settings import settings
from driftly.services.error_service import error_service
from driftly.services.flow_service import flow_service

log = structlog.get_logger(__name__)


async def verify_api_key(request: Request):
    """Checks X-API-KEY when an API key is configured."""
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            log.warning("api_key_rejected", path=request.url.path)
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid or missing API key")
    return True


def get_flow_scheduler(request: Request):
    scheduler = getattr(request.app.state, "flow_scheduler", None)
    if scheduler is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Flow scheduler is not initialised")
    return scheduler


def get_flow_service():
    return flow_service


def get_error_service():
    return error_service
