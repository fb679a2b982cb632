import json

from django.core.management.base import BaseCommand, CommandError

from workflow.scheduler import SCHEDULES, JobRegistry


class Command(BaseCommand):
    help = "Run one periodic job immediately."

    def add_arguments(self, parser):
        parser.add_argument('name', choices=sorted(SCHEDULES))

    def handle(self, *args, **options):
        entry = JobRegistry().run_job(options['name'])
        if entry['last_error']:
            raise CommandError(f"{options['name']} failed: {entry['last_error']}")
        self.stdout.write(self.style.SUCCESS(json.dumps(entry['last_result'], default=str)))
