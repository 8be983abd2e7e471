"""
Management command to run the payment reconciliation workers

Usage:
    python manage.py run_payment_worker

    # Drain whatever is due and exit (cron / debugging):
    python manage.py run_payment_worker --once

Options:
    --concurrency: Worker threads (default: RECONCILE_WORKER_CONCURRENCY)
    --once: Process due jobs on this thread and exit
"""

import signal

from django.core.management.base import BaseCommand

from hotspot.mikrotik import NetworkAccessController
from hotspot.mpesa import DarajaAPI
from hotspot.queue import ReconciliationQueue
from hotspot.worker import ReconciliationWorkerPool


class Command(BaseCommand):
    help = 'Run the M-Pesa payment reconciliation worker pool'

    def add_arguments(self, parser):
        parser.add_argument(
            '--concurrency',
            type=int,
            default=None,
            help='Number of worker threads',
        )
        parser.add_argument(
            '--once',
            action='store_true',
            help='Process due jobs once and exit',
        )

    def handle(self, *args, **options):
        pool = ReconciliationWorkerPool(
            ReconciliationQueue(),
            DarajaAPI(),
            NetworkAccessController.from_settings(),
            concurrency=options['concurrency'],
        )

        if options['once']:
            self.stdout.write('Processing due reconciliation jobs...\n')
            result = pool.process_available()
            self.stdout.write(self.style.SUCCESS(
                f'✅ Processed {result["processed"]}, retried {result["retried"]}, '
                f'crashed {result["crashed"]}\n'
            ))
            return

        self.stdout.write(self.style.SUCCESS(
            f'\n💳 Qonnect Payment Worker\n'
            f'========================\n'
            f'Concurrency: {pool.concurrency}\n'
            f'Rate limit: {pool.rate_limiter.limit} jobs / {pool.rate_limiter.period}s\n'
        ))

        # Set up signal handlers for graceful shutdown
        def signal_handler(signum, frame):
            self.stdout.write(self.style.WARNING(
                '\n⚠️  Shutdown signal received, finishing in-flight jobs...\n'
            ))
            pool.request_stop()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        pool.start()
        try:
            pool.wait()
        finally:
            pool.stop()
            self.stdout.write(self.style.SUCCESS('✅ Payment worker stopped\n'))
