import logging
import signal
import threading

from django.core.management.base import BaseCommand

from workflow.scheduler import JobRegistry

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Run the periodic job scheduler (SLA monitoring, assignment, cleanup, billing)."

    def handle(self, *args, **options):
        registry = JobRegistry()
        stopped = threading.Event()

        def _stop(signum, frame):
            logger.info(f"Received signal {signum}, stopping scheduler")
            stopped.set()

        signal.signal(signal.SIGINT, _stop)
        signal.signal(signal.SIGTERM, _stop)

        registry.start()
        for name, info in registry.status().items():
            self.stdout.write(f"{name}: next run {info['next_run_time']}")
        try:
            stopped.wait()
        finally:
            registry.shutdown(wait=True)
