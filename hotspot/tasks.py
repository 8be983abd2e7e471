"""
Background tasks for Qonnect Hotspot Billing
Timeout sweeps that force stale payments and sessions into terminal states
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from .admission import find_active_session
from .audit import audit
from .mikrotik import NetworkAccessController
from .models import PaymentRecord, PaymentStatus, SessionRecord

logger = logging.getLogger(__name__)


def expire_stalled_payments(now=None, timeout_minutes=None, batch_size=None):
    """
    Expire payments that never received a callback.

    A payment is stalled when it is still pending and both its creation
    and last update are older than PAYMENT_TIMEOUT_MINUTES. Each row moves
    to ``expired`` in its own transaction with a conditional update, so a
    callback landing at the same moment wins or loses cleanly.
    """
    try:
        now = now or timezone.now()
        timeout_minutes = timeout_minutes or settings.PAYMENT_TIMEOUT_MINUTES
        batch_size = batch_size or settings.SWEEP_BATCH_SIZE
        cutoff = now - timedelta(minutes=timeout_minutes)

        stalled = list(
            PaymentRecord.objects.filter(
                status=PaymentStatus.PENDING,
                created_at__lte=cutoff,
                updated_at__lte=cutoff,
            ).order_by("created_at")[:batch_size]
        )

        expired_count = 0
        skipped_count = 0
        failed_count = 0

        if stalled:
            logger.info(f"🔍 Found {len(stalled)} stalled payment(s) to expire")

        for payment in stalled:
            try:
                with transaction.atomic():
                    if not payment.mark_expired():
                        skipped_count += 1
                        continue
                    audit(
                        "payment_timeout_auto",
                        transaction_id=payment.transaction_id,
                        checkout_request_id=payment.checkout_request_id,
                        created_at=payment.created_at,
                        timeout_minutes=timeout_minutes,
                    )
                expired_count += 1
                logger.info(f"⏰ Payment {payment.transaction_id} expired (no callback)")
            except Exception as e:
                failed_count += 1
                logger.error(f"Failed to expire payment {payment.transaction_id}: {e}")

        if expired_count:
            logger.info(f"✅ Expired {expired_count} stalled payment(s)")

        return {
            "success": True,
            "expired_count": expired_count,
            "skipped_count": skipped_count,
            "failed_count": failed_count,
            "timestamp": now.isoformat(),
        }

    except Exception as e:
        logger.error(f"Error in expire_stalled_payments task: {str(e)}")
        return {"success": False, "error": str(e)}


def disconnect_expired_sessions(now=None, controller=None, batch_size=None):
    """
    Disconnect sessions whose paid window has ended.

    Each session is closed with reason ``expired`` by a conditional update
    before the router is asked to revoke access, so a row a new purchase
    already closed is skipped. No revoke is sent while the MAC holds a
    newer live session. Failed revokes are audited so an operator can
    clean up the router by hand.
    """
    try:
        now = now or timezone.now()
        controller = controller or NetworkAccessController.from_settings()
        batch_size = batch_size or settings.SWEEP_BATCH_SIZE

        expired_sessions = list(
            SessionRecord.objects.filter(
                disconnected_at__isnull=True, expires_at__lte=now
            ).order_by("expires_at")[:batch_size]
        )

        disconnected_count = 0
        revoke_failed_count = 0
        skipped_count = 0
        failed_count = 0

        if expired_sessions:
            logger.info(f"🔍 Found {len(expired_sessions)} expired session(s) to disconnect")

        for session in expired_sessions:
            try:
                # Claim the row first; a purchase may have closed it since the select
                if not session.end("expired", now=now):
                    skipped_count += 1
                    continue
                disconnected_count += 1
                audit(
                    "session_expired",
                    session_id=session.pk,
                    mac_address=session.mac_address,
                    expires_at=session.expires_at,
                )

                newer = find_active_session(session.mac_address, now=now)
                if newer is not None:
                    logger.info(
                        f"ℹ️ {session.mac_address} has a newer session until "
                        f"{newer.expires_at.isoformat()}, leaving router access in place"
                    )
                    continue

                result = controller.revoke(session.mac_address)
                if not result.get("success"):
                    revoke_failed_count += 1
                    logger.error(
                        f"❌ Router revoke failed for {session.mac_address}: "
                        f"{result.get('message')}"
                    )
                    audit(
                        "session_revoke_failed",
                        session_id=session.pk,
                        mac_address=session.mac_address,
                        message=result.get("message"),
                    )
            except Exception as e:
                failed_count += 1
                logger.error(f"Failed to disconnect session {session.pk}: {e}")

        if disconnected_count:
            logger.info(f"✅ Disconnected {disconnected_count} expired session(s)")

        return {
            "success": True,
            "disconnected_count": disconnected_count,
            "revoke_failed_count": revoke_failed_count,
            "skipped_count": skipped_count,
            "failed_count": failed_count,
            "timestamp": now.isoformat(),
        }

    except Exception as e:
        logger.error(f"Error in disconnect_expired_sessions task: {str(e)}")
        return {"success": False, "error": str(e)}
