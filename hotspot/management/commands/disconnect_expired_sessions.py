"""
Django management command to disconnect expired hotspot sessions
Run with: python manage.py disconnect_expired_sessions
"""
from django.core.management.base import BaseCommand
from hotspot.tasks import disconnect_expired_sessions


class Command(BaseCommand):
    help = 'Disconnect sessions whose paid window has ended'

    def handle(self, *args, **options):
        self.stdout.write('Checking for expired sessions...')

        result = disconnect_expired_sessions()

        if result['success']:
            self.stdout.write(
                self.style.SUCCESS(
                    f'✓ Disconnected {result["disconnected_count"]} expired sessions'
                )
            )
            if result['revoke_failed_count'] > 0:
                self.stdout.write(
                    self.style.WARNING(
                        f'⚠ Router revoke failed for {result["revoke_failed_count"]} '
                        'sessions (see audit log)'
                    )
                )
            if result['failed_count'] > 0:
                self.stdout.write(
                    self.style.WARNING(f'⚠ Failed to process {result["failed_count"]} sessions')
                )
        else:
            self.stdout.write(
                self.style.ERROR(f'✗ Error: {result.get("error", "Unknown error")}')
            )
