"""
Utility functions for the hotspot app
"""

import ipaddress
import logging
import re

logger = logging.getLogger(__name__)

KENYA_MSISDN_RE = re.compile(r"^2547\d{8}$")


def normalize_phone_number(phone_number):
    """
    Normalize phone number to the M-Pesa Kenya format (2547XXXXXXXX)

    Handles formats like:
    - +254712345678 -> 254712345678
    - 254712345678 -> 254712345678
    - 0712345678 -> 254712345678
    - 712345678 -> 254712345678

    Raises:
        ValueError: If phone number is invalid
    """
    if not phone_number:
        raise ValueError("Phone number cannot be empty")

    # Keep digits only (drops +, spaces and dashes)
    phone = "".join(c for c in str(phone_number) if c.isdigit())

    if phone.startswith("254"):
        normalized = phone
    elif phone.startswith("0") and len(phone) == 10:
        normalized = "254" + phone[1:]
    elif len(phone) == 9:
        normalized = "254" + phone
    else:
        raise ValueError(f"Unrecognized phone number format: {phone_number}")

    if not KENYA_MSISDN_RE.match(normalized):
        raise ValueError(f"Invalid Safaricom phone number: {phone_number}")
    return normalized


def mask_phone_number(phone_number):
    """254712345678 -> 2547****5678, for logs"""
    if not phone_number or len(phone_number) < 8:
        return phone_number
    return f"{phone_number[:4]}****{phone_number[-4:]}"


def get_client_ip(request):
    """
    Extract the real client IP address from request headers.
    First X-Forwarded-For hop, then X-Real-IP, then REMOTE_ADDR.
    """
    for header in ("HTTP_X_FORWARDED_FOR", "HTTP_X_REAL_IP", "REMOTE_ADDR"):
        value = request.META.get(header)
        if not value:
            continue
        # X-Forwarded-For can contain multiple IPs separated by commas
        candidate = value.split(",")[0].strip()
        try:
            ipaddress.ip_address(candidate)
            return candidate
        except ValueError:
            logger.debug(f"Ignoring invalid IP in {header}: {candidate}")
    return None


def get_peer_ip(request, trusted_proxies=0):
    """
    Address of the caller as seen by our own edge.

    With no trusted proxies this is REMOTE_ADDR. Behind N proxies it is the
    Nth X-Forwarded-For entry counted from the right, the one written by
    the outermost proxy we run. Entries further left are client-supplied.
    """
    remote_addr = request.META.get("REMOTE_ADDR")
    candidate = remote_addr
    if trusted_proxies > 0:
        hops = [
            hop.strip()
            for hop in request.META.get("HTTP_X_FORWARDED_FOR", "").split(",")
            if hop.strip()
        ]
        if len(hops) >= trusted_proxies:
            candidate = hops[-trusted_proxies]
        else:
            logger.warning(
                f"Expected {trusted_proxies} forwarded hop(s), got {len(hops)}; "
                f"using REMOTE_ADDR {remote_addr}"
            )

    try:
        ipaddress.ip_address(candidate or "")
        return candidate
    except ValueError:
        logger.debug(f"Ignoring invalid peer IP: {candidate}")
        return None
