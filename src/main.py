"""Wiring for Account Guard: logging, database, admission control and background jobs."""
import logging
from dataclasses import dataclass
from typing import Callable

from apscheduler.schedulers.background import BackgroundScheduler

from config.settings import Settings, settings as default_settings
from src.logging_config import setup_logging
from src.persistence.database import get_session, init_db
from src.ratelimit.controller import AdmissionController
from src.ratelimit.middleware import RateLimitMiddleware
from src.scheduler import build_scheduler

logger = logging.getLogger(__name__)


@dataclass
class AccountGuard:
    """Running components shared by the web application."""

    settings: Settings
    controller: AdmissionController
    scheduler: BackgroundScheduler

    def wrap(self, app: Callable) -> RateLimitMiddleware:
        """Put admission control in front of a WSGI app."""
        return RateLimitMiddleware.from_settings(app, self.controller, self.settings)

    def shutdown(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        logger.info("Account Guard stopped")


def start(app_settings: Settings = default_settings) -> AccountGuard:
    """Configure logging, create tables, build the controller and start the scheduler."""
    setup_logging(app_settings.log_level, app_settings.log_file)
    init_db()

    controller = AdmissionController.from_settings(app_settings)
    scheduler = build_scheduler(controller, get_session, app_settings)
    scheduler.start()

    logger.info("Scheduler started:")
    logger.info(
        "  - Idle bucket sweep every %d minutes", app_settings.bucket_sweep_interval_minutes
    )
    logger.info("  - Expired token purge daily at %02d:00", app_settings.token_purge_hour)
    if app_settings.trust_forwarded_for and not app_settings.trusted_proxies:
        logger.warning(
            "X-Forwarded-For is trusted from any peer; set TRUSTED_PROXIES "
            "unless a reverse proxy always overwrites it"
        )

    return AccountGuard(settings=app_settings, controller=controller, scheduler=scheduler)
