"""
Callback origin checks for the M-Pesa webhook.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.conf import settings

from .utils import get_peer_ip

logger = logging.getLogger(__name__)


@dataclass
class CallbackOrigin:
    client_ip: Optional[str]
    is_authorized_ip: bool
    enforced: bool

    @property
    def rejected(self):
        return self.enforced and not self.is_authorized_ip


def is_valid_safaricom_ip(ip):
    return bool(ip) and ip in set(settings.MPESA_CALLBACK_ALLOWED_IPS)


def allowlist_enforced():
    """IP allow-list is only enforced in production (DEBUG off)."""
    return bool(settings.MPESA_ENFORCE_IP_ALLOWLIST) and not settings.DEBUG


def check_callback_origin(request):
    client_ip = get_peer_ip(
        request, trusted_proxies=settings.MPESA_CALLBACK_TRUSTED_PROXIES
    )
    authorized = is_valid_safaricom_ip(client_ip)
    enforced = allowlist_enforced()

    if not authorized:
        if enforced:
            logger.error(f"🔴 SECURITY: Unauthorized callback IP: {client_ip}")
        else:
            logger.warning(
                f"⚠️ Callback from non-Safaricom IP {client_ip} accepted "
                "(IP validation disabled in non-production environment)"
            )

    return CallbackOrigin(
        client_ip=client_ip, is_authorized_ip=authorized, enforced=enforced
    )
