"""Background jobs: idle bucket eviction and expired token purge."""
import logging
from contextlib import AbstractContextManager
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy.orm import Session

from src.persistence.cleanup import purge_expired_tokens
from src.ratelimit.controller import AdmissionController

logger = logging.getLogger(__name__)


def run_bucket_sweep(controller: AdmissionController) -> int:
    """Evict idle buckets. Errors are logged, never raised into the scheduler."""
    try:
        return controller.sweep_idle_buckets()
    except Exception as e:
        logger.error("Error during rate limit bucket sweep: %s", e, exc_info=True)
        return 0


def run_token_purge(
    session_scope: Callable[[], AbstractContextManager[Session]],
) -> dict:
    """Purge expired tokens. Errors are logged, never raised into the scheduler."""
    try:
        return purge_expired_tokens(session_scope)
    except Exception as e:
        logger.error("Error during token cleanup: %s", e, exc_info=True)
        return {}


def build_scheduler(
    controller: AdmissionController,
    session_scope: Callable[[], AbstractContextManager[Session]],
    settings,
) -> BackgroundScheduler:
    """
    Create (but do not start) the background scheduler.

    Jobs:
    - Idle bucket sweep every ``bucket_sweep_interval_minutes``
    - Expired token purge daily at ``token_purge_hour``:00
    """
    scheduler = BackgroundScheduler()

    scheduler.add_job(
        run_bucket_sweep,
        trigger=IntervalTrigger(minutes=settings.bucket_sweep_interval_minutes),
        args=[controller],
        id="bucket_sweep",
        name="Idle Bucket Sweep",
        max_instances=1,
    )

    scheduler.add_job(
        run_token_purge,
        trigger=CronTrigger(hour=settings.token_purge_hour, minute=0),
        args=[session_scope],
        id="token_purge",
        name="Expired Token Purge",
        max_instances=1,
    )

    return scheduler
