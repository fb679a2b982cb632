import logging
import time

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from django.conf import settings
from django.db import close_old_connections
from django.utils import timezone

from . import jobs

logger = logging.getLogger(__name__)

SCHEDULES = {
    'sla_monitoring': (jobs.sla_monitoring, {'minute': '*/5'}),
    'study_assignment': (jobs.study_assignment, {'minute': '*/10'}),
    'daily_cleanup': (jobs.daily_cleanup, {'hour': 2, 'minute': 0}),
    'notification_cleanup': (jobs.notification_cleanup, {'hour': 1, 'minute': 0}),
    'rating_calculation': (jobs.rating_calculation, {'hour': 4, 'minute': 0}),
    'audit_cleanup': (jobs.audit_cleanup, {'day_of_week': 'sun', 'hour': 3, 'minute': 0}),
    'monthly_billing': (jobs.monthly_billing, {'day': 1, 'hour': 3, 'minute': 0}),
    'invoice_overdue': (jobs.invoice_overdue, {'hour': 5, 'minute': 0}),
}


class JobRegistry:
    """Owns the APScheduler instance and the fixed set of platform jobs."""

    def __init__(self, scheduler=None):
        self.scheduler = scheduler or BackgroundScheduler(timezone=settings.SCHEDULER_TIMEZONE)
        self.history = {}
        for name in SCHEDULES:
            self._add(name)

    def _add(self, name):
        _, cron = SCHEDULES[name]
        self.scheduler.add_job(
            self.execute,
            CronTrigger(timezone=settings.SCHEDULER_TIMEZONE, **cron),
            args=[name],
            id=name,
            name=name,
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

    def _check(self, name):
        if name not in SCHEDULES:
            raise KeyError(f"Unknown job: {name}")

    def execute(self, name):
        self._check(name)
        func, _ = SCHEDULES[name]
        started = time.monotonic()
        logger.info(f"Job {name} started")
        close_old_connections()
        entry = {'last_run': timezone.now().isoformat(), 'last_result': None, 'last_error': None}
        try:
            entry['last_result'] = func()
        except Exception as e:
            logger.exception(f"Job {name} failed: {str(e)}")
            entry['last_error'] = str(e)
        finally:
            close_old_connections()
        entry['duration_ms'] = int((time.monotonic() - started) * 1000)
        self.history[name] = entry
        logger.info(f"Job {name} finished in {entry['duration_ms']}ms")
        return entry

    def run_job(self, name):
        return self.execute(name)

    def start(self, name=None):
        if name is None:
            if not self.scheduler.running:
                self.scheduler.start()
                logger.info(f"Scheduler started with {len(SCHEDULES)} jobs")
            return
        self._check(name)
        if self.scheduler.get_job(name) is None:
            self._add(name)
        else:
            self.scheduler.resume_job(name)
        logger.info(f"Job {name} resumed")

    def stop(self, name):
        self._check(name)
        if self.scheduler.get_job(name) is not None:
            self.scheduler.pause_job(name)
            logger.info(f"Job {name} paused")

    def remove(self, name):
        self._check(name)
        if self.scheduler.get_job(name) is not None:
            self.scheduler.remove_job(name)
            logger.info(f"Job {name} removed")

    def status(self):
        result = {}
        for name, (_, cron) in SCHEDULES.items():
            job = self.scheduler.get_job(name)
            next_run = getattr(job, 'next_run_time', None) if job is not None else None
            result[name] = {
                'scheduled': job is not None,
                'running': job is not None and next_run is not None,
                'schedule': cron,
                'next_run_time': next_run.isoformat() if next_run else None,
                **self.history.get(name, {}),
            }
        return result

    def shutdown(self, wait=False):
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("Scheduler shut down")
