"""
Django management command to re-arm dead reconciliation jobs

Usage:
    python manage.py requeue_dead_jobs --list
    python manage.py requeue_dead_jobs ws_CO_191220191020363925
    python manage.py requeue_dead_jobs --all
"""
from django.core.management.base import BaseCommand, CommandError
from hotspot.models import ReconciliationJob
from hotspot.queue import ReconciliationQueue


class Command(BaseCommand):
    help = 'List or re-queue reconciliation jobs that ran out of attempts'

    def add_arguments(self, parser):
        parser.add_argument('job_key', nargs='?', help='CheckoutRequestID of the job')
        parser.add_argument('--all', action='store_true', help='Re-queue every dead job')
        parser.add_argument('--list', action='store_true', help='Only list dead jobs')

    def handle(self, *args, **options):
        job_key = options['job_key']

        if options['list'] or not (job_key or options['all']):
            counts = ReconciliationQueue().stats()
            self.stdout.write(
                '  '.join(f'{status}={total}' for status, total in counts.items())
            )
            dead = ReconciliationJob.objects.filter(status='dead').order_by('-updated_at')
            if not dead:
                self.stdout.write(self.style.SUCCESS('✓ No dead jobs'))
                return
            for job in dead:
                self.stdout.write(
                    f'{job.job_key}  attempts={job.attempts}  '
                    f'updated={job.updated_at:%Y-%m-%d %H:%M:%S}  error={job.last_error}'
                )
            return

        count = ReconciliationQueue().requeue_dead(job_key=None if options['all'] else job_key)
        if job_key and not count:
            raise CommandError(f'No dead job with key {job_key}')

        self.stdout.write(self.style.SUCCESS(f'✓ Re-queued {count} dead job(s)'))
