"""FastAPI application entry point."""

from __future__ import annotations

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from spendwatch.api import admin, cron
from spendwatch.core.config import load_config
from spendwatch.logging import configure_logging, get_request_id
from spendwatch.middleware.request_context import RequestContextMiddleware
from spendwatch.services import build_services
from spendwatch.storage.database import init_db
from spendwatch.telemetry.events import record_event

configure_logging()

logger = logging.getLogger("spendwatch.app")

app = FastAPI(
    title="Spendwatch",
    version="0.1.0",
    openapi_url="/api/openapi.json",
)
app.include_router(cron.router)
app.include_router(admin.router)
app.add_middleware(RequestContextMiddleware)


@app.on_event("startup")
def on_startup() -> None:
    init_db()
    app.state.services = build_services(load_config())


@app.get("/healthz")
def healthz() -> dict:
    return {"status": "ok"}


@app.exception_handler(Exception)
async def unexpected_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unhandled error",
        extra={
            "event": "request_error",
            "path": request.url.path,
            "request_id": get_request_id(),
        },
    )
    record_event(
        "request_error",
        "ERROR",
        message=str(exc),
        meta={
            "path": request.url.path,
        },
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "message": "Internal server error",
                "type": "internal_server_error",
                "code": "internal_error",
            }
        },
    )
