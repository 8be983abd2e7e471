"""
Audit trail: every security and reconciliation event is written to the
AuditEntry table and mirrored to the ``hotspot.audit`` logger.
"""

import json
import logging

from django.core.serializers.json import DjangoJSONEncoder

from .models import AuditEntry

logger = logging.getLogger("hotspot.audit")
app_logger = logging.getLogger(__name__)

WARNING_ACTIONS = {
    "callback_unauthorized_ip",
    "callback_invalid_structure",
    "callback_enqueue_failed",
    "fraud_detected_amount_mismatch",
    "payment_verification_failed",
    "access_grant_failed",
    "session_revoke_failed",
    "potential_mac_spoofing",
    "payment_not_found",
}


def _jsonable(details):
    # Decimals and datetimes become strings so the JSONField accepts them
    return json.loads(json.dumps(details or {}, cls=DjangoJSONEncoder))


def audit(action, actor=None, **details):
    """
    Record an audit event. Never raises: a failed audit write is logged
    and the caller carries on.
    """
    payload = _jsonable(details)
    level = logging.WARNING if action in WARNING_ACTIONS else logging.INFO
    logger.log(level, f"{action} {json.dumps(payload, sort_keys=True)}")

    try:
        return AuditEntry.objects.create(action=action, actor=actor, details=payload)
    except Exception as e:
        app_logger.error(f"Failed to persist audit entry {action}: {e}")
        return None
