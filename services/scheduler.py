"""Renewal scheduler: one recurring timer per application driving the renewal job.

The schedule is a five-field cron expression (``minute hour day month
weekday``) evaluated in the configured time zone with Celery's ``crontab``.
Runs never overlap inside one process: a tick that finds the previous run
still in progress is skipped.  Exclusion across several processes is not
provided, so deploy exactly one scheduler per database.
"""

from __future__ import annotations

import datetime
import logging
import threading
from typing import Callable, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from celery import Celery
from celery.schedules import ParseException, crontab

from services.event_log import E, EventLog

logger = logging.getLogger(__name__)

_MAX_SLEEP_SECONDS = 300.0

_ALIASES = {
    "@hourly": "0 * * * *",
    "@daily": "0 0 * * *",
    "@midnight": "0 0 * * *",
    "@weekly": "0 0 * * 0",
    "@monthly": "0 0 1 * *",
    "@yearly": "0 0 1 1 *",
    "@annually": "0 0 1 1 *",
}


def _zone(tz_name: str) -> ZoneInfo:
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone: {tz_name!r}") from exc


def parse_schedule(expression: str, tz_name: str = "UTC") -> crontab:
    """Build a ``crontab`` for *expression* evaluated in *tz_name*.

    Raises ``ValueError`` for a malformed expression or unknown zone.
    """
    zone = _zone(tz_name)
    expression = (expression or "").strip()
    expression = _ALIASES.get(expression.lower(), expression)
    fields = expression.split()
    if len(fields) != 5:
        raise ValueError(
            f"Schedule must have 5 fields (minute hour day month weekday): {expression!r}"
        )
    minute, hour, day_of_month, month_of_year, day_of_week = fields

    clock = Celery("subscription_renewal", set_as_current=False)
    clock.conf.timezone = tz_name
    clock.conf.enable_utc = True
    try:
        return crontab(
            minute=minute,
            hour=hour,
            day_of_month=day_of_month,
            month_of_year=month_of_year,
            day_of_week=day_of_week,
            nowfun=lambda: datetime.datetime.now(zone),
            app=clock,
        )
    except (ParseException, ValueError) as exc:
        raise ValueError(f"Invalid schedule expression {expression!r}: {exc}") from exc


class RenewalScheduler:
    """Owns the renewal timer thread; ``start``/``stop`` are idempotent."""

    def __init__(
        self,
        app,
        job: Callable,
        schedule: str,
        timezone: str,
        event_log: EventLog,
    ):
        self.app = app
        self.job = job
        self.expression = schedule
        self.timezone = timezone
        self.schedule = parse_schedule(schedule, timezone)
        self.event_log = event_log
        self.last_run_at: Optional[datetime.datetime] = None
        self.last_result = None
        self._zone = _zone(timezone)
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_busy(self) -> bool:
        return self._lock.locked()

    def now(self) -> datetime.datetime:
        return datetime.datetime.now(self._zone)

    def start(self) -> bool:
        if self.is_running:
            return False
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="subscription-renewal", daemon=True
        )
        self._thread.start()
        logger.info(
            "Subscription renewal scheduler started (%s, %s)", self.expression, self.timezone
        )
        return True

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None
        logger.info("Subscription renewal scheduler stopped")

    def tick(self):
        """Run the job once unless a run is already in progress.

        Returns the job result, or ``None`` when skipped or failed.  Errors
        are logged and recorded, never raised.
        """
        if not self._lock.acquire(blocking=False):
            logger.warning("Subscription renewal still running, skipping this tick")
            self.event_log.append(E.JOB_SKIPPED, reason="previous run still in progress")
            return None
        try:
            with self.app.app_context():
                self.last_result = self.job()
            return self.last_result
        except Exception as exc:
            logger.exception("Subscription renewal run failed")
            self.event_log.append(E.JOB_ERROR, error=str(exc))
            return None
        finally:
            self.last_run_at = self.now()
            self._lock.release()

    def _loop(self) -> None:
        last_check = self.now()
        while not self._stop_event.is_set():
            due, wait = self.schedule.is_due(last_check)
            if due:
                last_check = self.now()
                self.tick()
            self._stop_event.wait(min(max(float(wait), 1.0), _MAX_SLEEP_SECONDS))


def init_renewal_scheduler(app, renewal_cfg, job: Callable, event_log: EventLog) -> RenewalScheduler:
    """Create the application's scheduler once and start it when enabled."""
    scheduler = app.extensions.get("renewal_scheduler")
    if scheduler is None:
        scheduler = RenewalScheduler(
            app,
            job,
            schedule=renewal_cfg.schedule,
            timezone=renewal_cfg.timezone,
            event_log=event_log,
        )
        app.extensions["renewal_scheduler"] = scheduler
    if renewal_cfg.enabled and not app.testing:
        scheduler.start()
    return scheduler


def get_scheduler(app=None) -> RenewalScheduler:
    if app is None:
        from flask import current_app

        app = current_app
    return app.extensions["renewal_scheduler"]
