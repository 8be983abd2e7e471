"""
MAC address validation and anti-spoofing checks for hotspot admission.

Prevents:
- invalid and multicast MAC addresses
- a second concurrent session for the same device
and flags (without blocking) MACs that look cloned.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import timedelta
from typing import List, Optional

from django.db import transaction
from django.utils import timezone

from .audit import audit
from .models import SessionRecord, User

logger = logging.getLogger(__name__)

MAC_RE = re.compile(r"^([0-9A-F]{2}:){5}[0-9A-F]{2}$")

SPOOF_WINDOW = timedelta(minutes=30)
SPOOF_RECENT_WINDOW = timedelta(seconds=60)
SPOOF_MAX_DISTINCT_IPS = 3


class InvalidMACAddress(ValueError):
    pass


@dataclass
class SpoofingReport:
    is_suspicious: bool = False
    reason: str = ""
    ips: List[str] = field(default_factory=list)
    previous_ip: Optional[str] = None


@dataclass
class AdmissionDecision:
    allowed: bool
    mac_address: Optional[str] = None
    reason: str = ""
    active_session: Optional[SessionRecord] = None
    spoofing: SpoofingReport = field(default_factory=SpoofingReport)


def validate_mac_format(mac):
    """
    Normalize ``mac`` to AA:BB:CC:DD:EE:FF.

    Accepts ':' or '-' separators in any case. Raises InvalidMACAddress
    for anything that is not six hex octets or is a multicast address.
    """
    if not mac or not isinstance(mac, str):
        raise InvalidMACAddress("MAC address is required")

    normalized = mac.strip().upper().replace("-", ":")
    if not MAC_RE.match(normalized):
        raise InvalidMACAddress(
            f"Invalid MAC format {mac!r} (expected AA:BB:CC:DD:EE:FF)"
        )

    if int(normalized[:2], 16) & 0x01:
        raise InvalidMACAddress("Multicast MAC addresses are not allowed")

    return normalized


def find_active_session(mac, now=None):
    """The open, unexpired session for this MAC, if any."""
    now = now or timezone.now()
    return (
        SessionRecord.objects.filter(
            mac_address=mac, disconnected_at__isnull=True, expires_at__gt=now
        )
        .order_by("-granted_at")
        .first()
    )


def detect_potential_spoofing(mac, ip, now=None):
    """
    Look at the sessions this MAC opened over the last 30 minutes.

    Suspicious when the MAC came from more than three different IPs, or
    from a different IP within the last minute. Advisory only.
    """
    now = now or timezone.now()
    recent = list(
        SessionRecord.objects.filter(
            mac_address=mac, granted_at__gte=now - SPOOF_WINDOW
        ).values_list("ip_address", "granted_at")
    )
    if not recent:
        return SpoofingReport()

    unique_ips = sorted({addr for addr, _ in recent if addr})
    if len(unique_ips) > SPOOF_MAX_DISTINCT_IPS:
        return SpoofingReport(
            is_suspicious=True,
            reason="MAC appearing from multiple different IPs",
            ips=unique_ips,
        )

    if ip:
        for addr, granted_at in recent:
            if addr and addr != ip and granted_at > now - SPOOF_RECENT_WINDOW:
                return SpoofingReport(
                    is_suspicious=True,
                    reason="MAC appearing from different IP very recently",
                    ips=unique_ips,
                    previous_ip=addr,
                )

    return SpoofingReport(ips=unique_ips)


def check_admission(mac, ip=None, now=None):
    """
    Decide whether a device may start a new purchase.

    Rejects malformed MACs and MACs that already hold an active session.
    Spoofing suspicion is logged and audited but does not block.
    """
    try:
        normalized = validate_mac_format(mac)
    except InvalidMACAddress as e:
        return AdmissionDecision(allowed=False, reason=str(e))

    active = find_active_session(normalized, now=now)
    if active:
        return AdmissionDecision(
            allowed=False,
            mac_address=normalized,
            reason=(
                "This device already has an active session "
                f"(expires {active.expires_at.isoformat()})"
            ),
            active_session=active,
        )

    spoofing = detect_potential_spoofing(normalized, ip, now=now)
    if spoofing.is_suspicious:
        logger.warning(
            f"⚠️ Possible MAC spoofing for {normalized} from {ip}: {spoofing.reason}"
        )
        audit(
            "potential_mac_spoofing",
            mac_address=normalized,
            ip_address=ip,
            reason=spoofing.reason,
            ips=spoofing.ips,
            previous_ip=spoofing.previous_ip,
        )

    return AdmissionDecision(allowed=True, mac_address=normalized, spoofing=spoofing)


# Session ledger
# --------------

END_REASONS = {"user", "admin", "expired", "error"}


def open_session(phone_number, mac_address, expires_at, ip_address=None,
                 payment=None, now=None):
    """
    Record a granted session for ``mac_address``, upserting the user.

    Sessions still open for the same MAC are closed first: ones already
    past their expiry as ``expired``, a live one as superseded by the new
    purchase (reason ``user``).
    """
    now = now or timezone.now()
    mac = validate_mac_format(mac_address)

    with transaction.atomic():
        open_sessions = SessionRecord.objects.select_for_update().filter(
            mac_address=mac, disconnected_at__isnull=True
        )
        for previous in open_sessions:
            if previous.expires_at <= now:
                previous.end("expired", now=now)
                continue
            previous.end("user", now=now)
            logger.warning(
                f"⚠️ Session {previous.pk} for {mac} superseded by a new payment"
            )
            audit(
                "session_superseded",
                mac_address=mac,
                session_id=previous.pk,
                payment_id=payment.transaction_id if payment else None,
            )

        user = User.touch(phone_number, mac_address=mac, now=now)
        session = SessionRecord.objects.create(
            user=user,
            payment=payment,
            mac_address=mac,
            ip_address=ip_address,
            granted_at=now,
            expires_at=expires_at,
        )

    logger.info(f"🟢 Session opened for {mac} until {expires_at.isoformat()}")
    return session


def end_session(session, reason, controller=None, actor=None, now=None):
    """
    User- or admin-initiated disconnect.

    Revokes router access when a controller is given; the ledger is
    closed regardless of the router's answer.
    """
    if reason not in END_REASONS:
        raise ValueError(f"Unknown disconnect reason: {reason}")

    revoke_result = None
    if controller is not None:
        revoke_result = controller.revoke(session.mac_address)
        if not revoke_result.get("success"):
            logger.error(
                f"❌ Router revoke failed for {session.mac_address}: "
                f"{revoke_result.get('message')}"
            )

    closed = session.end(reason, now=now)
    if closed:
        audit(
            "session_ended",
            actor=actor,
            session_id=session.pk,
            mac_address=session.mac_address,
            reason=reason,
            router_revoked=bool(revoke_result and revoke_result.get("success")),
        )
    return closed
