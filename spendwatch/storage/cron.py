"""Once-per-day execution markers for scheduled jobs."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from .database import session_scope
from .models import CronExecution

logger = logging.getLogger("spendwatch.cron_log")


def claim_cron_run(job_name: str, run_date: str) -> bool:
    """Insert the (job, date) marker; False when another run already holds it.

    The unique constraint makes this the single arbiter between concurrent
    invocations, so no read-before-write is done.
    """
    try:
        with session_scope() as session:
            session.add(CronExecution(job_name=job_name, date=run_date))
    except IntegrityError:
        logger.info(
            "Cron run already claimed",
            extra={"event": "cron_already_claimed", "job_name": job_name, "date": run_date},
        )
        return False
    return True


def get_cron_execution(job_name: str, run_date: str) -> CronExecution | None:
    with session_scope() as session:
        return session.scalar(
            select(CronExecution).where(
                CronExecution.job_name == job_name, CronExecution.date == run_date
            )
        )
