import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List

import psycopg2
from dotenv import load_dotenv
from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

load_dotenv()

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

from easylist_api import app_context  # noqa: E402
from easylist_api.app.billing import BillingError  # noqa: E402
from easylist_api.app.routes.billing import router as billing_router  # noqa: E402
from easylist_api.app.services.billing import get_billing_config  # noqa: E402
from easylist_api.sweeps import (  # noqa: E402
    get_trial_sweep_metrics,
    shutdown_trial_sweep_scheduler,
    start_trial_sweep_scheduler,
)

logger = logging.getLogger("easylist_api")

SERVICE_NAME = "EasyList API Server"
SERVICE_VERSION = "1.0.0"

CONFIG = get_billing_config()


def get_conn():
    return psycopg2.connect(CONFIG.database_url, connect_timeout=5)


app_context.configure(get_conn=get_conn)

app = FastAPI(title="EasyList API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=sorted({"http://localhost:5173", CONFIG.app_url}),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(billing_router)


@app.exception_handler(BillingError)
async def handle_billing_error(request: Request, exc: BillingError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    else:
        logger.info("%s %s rejected: %s (%s)", request.method, request.url.path, exc.code, exc.message)
    http_exc = exc.to_http_exception()
    return JSONResponse(status_code=http_exc.status_code, content=http_exc.detail)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
    fields = [".".join(str(part) for part in error.get("loc", ()) if part != "body") for error in exc.errors()]
    message = ", ".join(f"{field} is required or invalid" for field in fields if field) or "Invalid request"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"error": "validation_error", "message": message, "fields": fields},
    )


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal_error", "message": "Internal server error"},
    )


@app.on_event("startup")
def _start_trial_sweep() -> None:
    if CONFIG.trial_sweep_enabled:
        start_trial_sweep_scheduler(interval_hours=CONFIG.trial_sweep_interval_hours)


@app.on_event("shutdown")
def _shutdown_trial_sweep() -> None:
    shutdown_trial_sweep_scheduler()


def _api_endpoints() -> List[str]:
    paths = app.openapi().get("paths", {})
    return sorted(
        f"{method.upper()} {path}" for path, operations in paths.items() if path.startswith("/api/") for method in operations
    )


@app.get("/")
def root() -> Dict[str, Any]:
    return {"message": SERVICE_NAME, "status": "running", "docs": "Use /api/health for service status"}


@app.get("/api/health")
def health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": SERVICE_VERSION,
        "environment": CONFIG.environment,
        "endpoints": _api_endpoints(),
        "env_check": dict(CONFIG.env_check()),
    }


@app.get("/api/metrics/trial-sweep")
def read_trial_sweep_metrics() -> Dict[str, Any]:
    return get_trial_sweep_metrics()
