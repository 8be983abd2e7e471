"""
Django management command to expire payments that never got a callback
Run with: python manage.py expire_stalled_payments
"""
from django.core.management.base import BaseCommand
from hotspot.tasks import expire_stalled_payments


class Command(BaseCommand):
    help = 'Expire pending payments older than PAYMENT_TIMEOUT_MINUTES'

    def add_arguments(self, parser):
        parser.add_argument(
            '--timeout-minutes',
            type=int,
            default=None,
            help='Override PAYMENT_TIMEOUT_MINUTES',
        )

    def handle(self, *args, **options):
        self.stdout.write('Checking for stalled payments...')

        result = expire_stalled_payments(timeout_minutes=options['timeout_minutes'])

        if result['success']:
            self.stdout.write(
                self.style.SUCCESS(f'✓ Expired {result["expired_count"]} stalled payments')
            )
            if result['failed_count'] > 0:
                self.stdout.write(
                    self.style.WARNING(f'⚠ Failed to expire {result["failed_count"]} payments')
                )
        else:
            self.stdout.write(
                self.style.ERROR(f'✗ Error: {result.get("error", "Unknown error")}')
            )
