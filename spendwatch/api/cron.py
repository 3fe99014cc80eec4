"""Scheduler-triggered endpoints guarded by the cron bearer secret."""

from __future__ import annotations

import hmac
import logging
import time
from typing import Annotated

from fastapi import APIRouter, Depends, Header
from fastapi.responses import JSONResponse

from spendwatch.core.config import get_cron_secret
from spendwatch.core.exceptions import CollectionFailedError
from spendwatch.core.timeutils import utcnow
from spendwatch.jobs import daily_collection, threshold_poll
from spendwatch.logging import bind_job, unbind_job
from spendwatch.services import Services, get_services
from spendwatch.storage.cron import claim_cron_run
from spendwatch.telemetry.events import record_event

logger = logging.getLogger("spendwatch.api.cron")

router = APIRouter(prefix="/api/cron")


def _authorize(authorization: str | None) -> JSONResponse | None:
    """Return an error response when the bearer secret is missing or wrong."""
    secret = get_cron_secret()
    if not secret:
        logger.error("CRON_SECRET not configured", extra={"event": "cron_secret_missing"})
        return JSONResponse(status_code=500, content={"error": "Server configuration error"})

    expected = f"Bearer {secret}".encode("utf-8")
    provided = (authorization or "").encode("utf-8")
    if not hmac.compare_digest(provided, expected):
        logger.warning("Unauthorized cron attempt", extra={"event": "cron_unauthorized"})
        return JSONResponse(status_code=401, content={"error": "Unauthorized"})
    return None


@router.get("/daily-batch")
async def daily_batch(
    services: Annotated[Services, Depends(get_services)],
    authorization: Annotated[str | None, Header()] = None,
) -> JSONResponse:
    denied = _authorize(authorization)
    if denied is not None:
        return denied

    started = time.perf_counter()
    today = utcnow().date().isoformat()

    if not claim_cron_run(daily_collection.JOB_NAME, today):
        record_event(
            "cron_skipped",
            "INFO",
            message="Already executed today",
            meta={"job": daily_collection.JOB_NAME, "date": today},
        )
        return JSONResponse({"message": "Already executed today", "date": today})

    token = bind_job(daily_collection.JOB_NAME)
    try:
        summary = await daily_collection.run_daily_collection(
            services.collector,
            batch_size=services.config.collection.batch_size,
        )
    except Exception as exc:
        # The claim is kept so the scheduler does not hammer a failing provider.
        logger.exception(
            "Daily collection failed",
            extra={"event": "daily_collection_failed", "date": today},
        )
        record_event(
            "daily_collection_failed",
            "ERROR",
            message=str(exc) or type(exc).__name__,
            meta={"date": today, "error_type": type(exc).__name__},
        )
        failed = exc.failed_organizations if isinstance(exc, CollectionFailedError) else ()
        await services.admin_notifier.notify_collection_failure(
            exc, date=today, failed_organizations=failed
        )
        return JSONResponse(
            status_code=500,
            content={"success": False, "error": str(exc) or type(exc).__name__, "date": today},
        )
    finally:
        unbind_job(token)

    duration_ms = int((time.perf_counter() - started) * 1000)
    return JSONResponse(
        {
            "success": True,
            "message": "Cost collection completed",
            "date": today,
            "recordsCollected": summary.records_collected,
            "recordsCreated": summary.records_created,
            "usageRecordsCollected": summary.usage_records_collected,
            "usageRecordsCreated": summary.usage_records_created,
            "durationMs": duration_ms,
        }
    )


@router.get("/poll-threshold")
async def poll_threshold(
    services: Annotated[Services, Depends(get_services)],
    authorization: Annotated[str | None, Header()] = None,
) -> JSONResponse:
    denied = _authorize(authorization)
    if denied is not None:
        return denied

    started = time.perf_counter()
    token = bind_job(threshold_poll.JOB_NAME)
    try:
        summary = await threshold_poll.run_threshold_poll(services.monitor, services.fanout)
    finally:
        unbind_job(token)

    duration_ms = int((time.perf_counter() - started) * 1000)
    message = (
        "Threshold polling completed" if summary.breaches else "No threshold breaches detected"
    )
    return JSONResponse(
        {
            "message": message,
            "breaches": summary.breaches,
            "alertsSent": summary.alerts_sent,
            "alertsFailed": summary.alerts_failed,
            "duration": duration_ms,
        }
    )
