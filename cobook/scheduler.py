"""
Background scheduling of the recurrence generator.
"""
from datetime import datetime, timezone
from typing import Callable, Optional

import structlog
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from .config import settings
from .db import SessionLocal
from .services.recurrence import GenerationSummary, run_recurrence_generation

logger = structlog.get_logger(__name__)

GENERATION_JOB_ID = "recurrence_generation"


def run_generation_job(session_factory: Callable[[], Session] = SessionLocal) -> Optional[GenerationSummary]:
    try:
        return run_recurrence_generation(session_factory)
    except Exception as exc:
        logger.exception("recurrence_generation_job_failed", error=str(exc))
        return None


def build_scheduler(session_factory: Callable[[], Session] = SessionLocal) -> BackgroundScheduler:
    """
    One generation job every RECURRENCE_INTERVAL_HOURS, first run right after start.
    Runs never overlap; missed runs collapse into one.
    """
    scheduler = BackgroundScheduler(timezone="UTC")
    scheduler.add_job(
        run_generation_job,
        IntervalTrigger(hours=settings.recurrence_interval_hours),
        args=[session_factory],
        id=GENERATION_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
        next_run_time=datetime.now(timezone.utc),
    )
    return scheduler
