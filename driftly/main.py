# /driftly/main.py

import os
import time
import uvicorn
from fastapi import FastAPI, Request, Depends
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from driftly.config.settings import settings
from driftly.models.api import APIResponse
from driftly.models.common import utc_now
from driftly.services.db_service import db_service
from driftly.utils.dependencies import verify_api_key
from driftly.utils.lifecycle import lifespan
from driftly.utils.metrics import response_time_histogram
from driftly.routes import automations

# Initialize the FastAPI application
app = FastAPI(
    title="Driftly Flow Engine",
    version="2.0.0",
    description="Executes marketing automation flows for enrolled contacts",
    lifespan=lifespan,
    openapi_url=f"/api/{settings.api_version}/openapi.json" if settings.environment != "production" else None,
    docs_url=f"/api/{settings.api_version}/docs" if settings.environment != "production" else None,
    redoc_url=f"/api/{settings.api_version}/redoc" if settings.environment != "production" else None,
)


# --- Middleware ---
@app.middleware("http")
async def performance_middleware(request: Request, call_next):
    start_time = time.time()
    response = await call_next(request)
    process_time = time.time() - start_time
    response_time_histogram.labels(endpoint=request.url.path).observe(process_time)
    response.headers["X-Process-Time"] = str(process_time)
    return response


# --- Public endpoints ---
@app.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": utc_now()}


@app.get("/health/detailed", response_model=APIResponse)
async def detailed_health_check(request: Request):
    scheduler = getattr(request.app.state, "flow_scheduler", None)
    health_status = {
        "status": "healthy",
        "services": {
            "database": "connected" if await db_service.health_check() else "error",
            "email": "configured" if settings.sendgrid_api_key else "not_configured",
            "scheduler": "running" if scheduler is not None and scheduler.is_running else "stopped",
        },
    }
    if health_status["services"]["database"] != "connected":
        health_status["status"] = "degraded"
    return APIResponse(
        success=True,
        message="Health status retrieved.",
        data=health_status,
        version=settings.api_version
    )


@app.get("/metrics", tags=["Monitoring"])
async def metrics(_: bool = Depends(verify_api_key)):
    """Secured Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type=CONTENT_TYPE_LATEST)


# --- API Routers ---
app.include_router(automations.router, prefix=f"/api/{settings.api_version}")

# --- Main Entry Point for Uvicorn (for local development) ---
if __name__ == "__main__":
    port = int(os.getenv("PORT", "8000"))
    host = os.getenv("HOST", "127.0.0.1")

    uvicorn.run(
        "driftly.main:app",
        host=host,
        port=port,
        reload=True if settings.environment == "development" else False,
        workers=settings.workers if settings.environment == "production" else 1
    )
