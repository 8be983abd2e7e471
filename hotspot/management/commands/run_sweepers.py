"""
Management command to run the timeout sweeps on their own cadence

Usage:
    python manage.py run_sweepers
    python manage.py run_sweepers --once

Runs expire_stalled_payments every PAYMENT_SWEEP_INTERVAL seconds and
disconnect_expired_sessions every SESSION_SWEEP_INTERVAL seconds.
"""

import signal
import threading

from django.conf import settings
from django.core.management.base import BaseCommand

from hotspot.scheduler import PeriodicSweep
from hotspot.tasks import disconnect_expired_sessions, expire_stalled_payments


class Command(BaseCommand):
    help = 'Run the payment timeout and session expiry sweeps'

    def add_arguments(self, parser):
        parser.add_argument(
            '--payment-interval',
            type=int,
            default=None,
            help='Payment sweep interval in seconds (default: PAYMENT_SWEEP_INTERVAL)',
        )
        parser.add_argument(
            '--session-interval',
            type=int,
            default=None,
            help='Session sweep interval in seconds (default: SESSION_SWEEP_INTERVAL)',
        )
        parser.add_argument(
            '--once',
            action='store_true',
            help='Run each sweep once and exit (useful for cron)',
        )

    def handle(self, *args, **options):
        sweeps = [
            PeriodicSweep(
                'payment-timeout',
                expire_stalled_payments,
                options['payment_interval'] or settings.PAYMENT_SWEEP_INTERVAL,
            ),
            PeriodicSweep(
                'session-expiry',
                disconnect_expired_sessions,
                options['session_interval'] or settings.SESSION_SWEEP_INTERVAL,
            ),
        ]

        if options['once']:
            for sweep in sweeps:
                result = sweep.run_once()
                style = self.style.SUCCESS if result.get('success') else self.style.ERROR
                self.stdout.write(style(f'{sweep.name}: {result}'))
            return

        stop = threading.Event()

        def signal_handler(signum, frame):
            self.stdout.write(self.style.WARNING('\n⚠️  Shutdown signal received, stopping sweeps...\n'))
            stop.set()

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        for sweep in sweeps:
            sweep.start()
        self.stdout.write(self.style.SUCCESS('🚀 Sweeps running... Press Ctrl+C to stop\n'))

        try:
            while not stop.wait(timeout=1):
                pass
        finally:
            for sweep in sweeps:
                sweep.stop(timeout=30)
            self.stdout.write(self.style.SUCCESS('✅ Sweeps stopped\n'))
