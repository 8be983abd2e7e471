"""
WSGI config for Qonnect Hotspot Billing
"""

import os

from django.core.wsgi import get_wsgi_application

os.environ.setdefault("DJANGO_SETTINGS_MODULE", "qonnect.settings")

application = get_wsgi_application()
