"""
Payment reconciliation: turns a confirmed M-Pesa callback into a terminal
payment status and, for good payments, network access.

    pending -> completed
            -> failed
            -> fraud_detected
            -> verification_failed
            -> completed_but_access_grant_failed  (via completed)

Business results come back as an Outcome. Only ``retryable`` outcomes
(and unexpected exceptions) make the queue try the job again.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from django.db import transaction
from django.utils import timezone

from .admission import open_session
from .audit import audit
from .callbacks import StkCallback
from .models import PaymentRecord, PaymentStatus
from .packages import package_for_amount
from .utils import mask_phone_number

logger = logging.getLogger(__name__)


class ReconciliationError(Exception):
    """A queued job that cannot be processed as stored (e.g. unreadable callback)."""


@dataclass
class Outcome:
    kind: str
    status: Optional[str] = None
    error: Optional[str] = None

    TERMINAL = "terminal"
    ALREADY_PROCESSED = "already_processed"
    RETRYABLE = "retryable"

    @classmethod
    def terminal(cls, status):
        return cls(kind=cls.TERMINAL, status=status)

    @classmethod
    def already_processed(cls, status):
        return cls(kind=cls.ALREADY_PROCESSED, status=status)

    @classmethod
    def retryable(cls, error):
        return cls(kind=cls.RETRYABLE, error=str(error))

    @property
    def is_retryable(self):
        return self.kind == self.RETRYABLE

    def as_dict(self):
        return {"outcome": self.kind, "status": self.status, "error": self.error}


def _settle(payment, to_status, **fields):
    """
    Conditionally move ``payment`` out of pending. When another writer
    already did, report what it left behind instead.
    """
    if payment.transition(to_status, **fields):
        return Outcome.terminal(to_status)
    payment.refresh_from_db(fields=["status"])
    logger.info(
        f"ℹ️ Payment {payment.transaction_id} already {payment.status}, skipping"
    )
    return Outcome.already_processed(payment.status)


def reconcile_payment(correlation_id, callback, gateway, controller, now=None):
    """
    Reconcile one STK callback against its PaymentRecord.

    Args:
        correlation_id: M-Pesa CheckoutRequestID
        callback: StkCallback, or the raw callback body
        gateway: object with query_stk_status(checkout_request_id) -> dict
        controller: object with grant(mac, label, correlation_id) and
            revoke(mac), both returning {"success": bool, ...}
    """
    if not isinstance(callback, StkCallback):
        try:
            callback = StkCallback.from_payload(callback)
        except ValueError as e:
            raise ReconciliationError(f"Unreadable callback for {correlation_id}: {e}") from e

    # 1. Idempotency guard
    payment = PaymentRecord.objects.filter(checkout_request_id=correlation_id).first()
    if payment is None:
        logger.error(f"❌ Payment not found for {correlation_id}")
        audit("payment_not_found", checkout_request_id=correlation_id)
        return Outcome.retryable(f"Payment not found for {correlation_id}")

    if payment.is_terminal:
        logger.info(
            f"ℹ️ Payment {payment.transaction_id} already processed ({payment.status})"
        )
        return Outcome.already_processed(payment.status)

    # 2. Gateway reported failure (cancelled, insufficient funds, timeout...)
    if not callback.is_success:
        logger.info(
            f"❌ Payment {payment.transaction_id} failed: "
            f"{callback.result_code} {callback.result_desc}"
        )
        outcome = _settle(
            payment,
            PaymentStatus.FAILED,
            result_code=callback.result_code,
            result_desc=callback.result_desc[:255],
        )
        if outcome.kind == Outcome.TERMINAL:
            audit(
                "payment_failed",
                transaction_id=payment.transaction_id,
                checkout_request_id=correlation_id,
                result_code=callback.result_code,
                result_desc=callback.result_desc,
            )
        return outcome

    # 3. Amount must match exactly
    paid_amount = callback.amount
    if paid_amount is None or paid_amount != payment.amount:
        logger.error(
            f"🚨 FRAUD: amount mismatch for {payment.transaction_id}: "
            f"expected {payment.amount}, callback {paid_amount}"
        )
        outcome = _settle(
            payment,
            PaymentStatus.FRAUD_DETECTED,
            result_code=callback.result_code,
            result_desc="Callback amount does not match payment amount",
            receipt_number=callback.receipt_number,
        )
        if outcome.kind == Outcome.TERMINAL:
            audit(
                "fraud_detected_amount_mismatch",
                transaction_id=payment.transaction_id,
                checkout_request_id=correlation_id,
                expected_amount=payment.amount,
                callback_amount=paid_amount,
                phone_number=callback.phone_number or payment.phone_number,
            )
        return outcome

    # 4. Independent confirmation from Daraja
    try:
        verification = gateway.query_stk_status(correlation_id)
    except Exception as e:
        logger.error(f"❌ Verification call raised for {correlation_id}: {e}")
        verification = {"success": False, "message": str(e)}

    if not verification.get("success"):
        message = verification.get("message") or "Verification failed"
        logger.warning(
            f"⚠️ M-Pesa could not confirm {payment.transaction_id}: {message}"
        )
        outcome = _settle(
            payment,
            PaymentStatus.VERIFICATION_FAILED,
            result_code=verification.get("result_code"),
            result_desc=str(message)[:255],
            receipt_number=callback.receipt_number,
        )
        if outcome.kind == Outcome.TERMINAL:
            audit(
                "payment_verification_failed",
                transaction_id=payment.transaction_id,
                checkout_request_id=correlation_id,
                message=message,
                note="Review payment status manually",
            )
        return outcome

    package = package_for_amount(payment.amount)
    if package is None:
        logger.error(
            f"❌ No package for amount {payment.amount} on {payment.transaction_id}"
        )
        audit(
            "payment_package_unknown",
            transaction_id=payment.transaction_id,
            amount=payment.amount,
        )
        return Outcome.retryable(f"No package configured for amount {payment.amount}")

    if package.code != payment.package_code:
        logger.warning(
            f"⚠️ Payment {payment.transaction_id} requested {payment.package_code} "
            f"but paid for {package.code}; granting {package.code}"
        )

    # 5. Complete under a row lock
    with transaction.atomic():
        locked = PaymentRecord.objects.select_for_update().get(pk=payment.pk)
        if locked.status != PaymentStatus.PENDING:
            return Outcome.already_processed(locked.status)

        granted_at = now or timezone.now()
        locked.transition(
            PaymentStatus.COMPLETED,
            receipt_number=callback.receipt_number,
            result_code=0,
            result_desc=callback.result_desc[:255],
            access_expires_at=granted_at + package.duration,
        )
    payment = locked

    logger.info(
        f"✅ Payment {payment.transaction_id} completed "
        f"({mask_phone_number(payment.phone_number)}, KES {payment.amount}, "
        f"receipt {payment.receipt_number})"
    )
    audit(
        "payment_completed",
        transaction_id=payment.transaction_id,
        checkout_request_id=correlation_id,
        receipt_number=payment.receipt_number,
        amount=payment.amount,
        package=package.code,
    )

    # 6. Grant network access
    try:
        grant = controller.grant(payment.mac_address, package.code, correlation_id)
    except Exception as e:
        grant = {"success": False, "message": str(e)}

    if not grant.get("success"):
        return _grant_failed(payment, correlation_id, grant.get("message"))

    try:
        open_session(
            payment.phone_number,
            payment.mac_address,
            payment.access_expires_at,
            ip_address=payment.client_ip,
            payment=payment,
            now=granted_at,
        )
    except Exception as e:
        logger.exception(f"❌ Session ledger write failed for {payment.transaction_id}")
        # No session row means no sweep would ever revoke this binding
        try:
            revoke = controller.revoke(payment.mac_address)
        except Exception as revoke_error:
            revoke = {"success": False, "message": str(revoke_error)}
        if revoke.get("success"):
            logger.info(f"↩️ Untracked access for {payment.mac_address} revoked")
        else:
            logger.error(
                f"❌ Could not revoke untracked access for {payment.mac_address}: "
                f"{revoke.get('message')}"
            )
        return _grant_failed(payment, correlation_id, f"Session ledger write failed: {e}")

    return Outcome.terminal(PaymentStatus.COMPLETED)


def _grant_failed(payment, correlation_id, message):
    message = message or "Access grant failed"
    logger.error(
        f"❌ Payment {payment.transaction_id} completed but access grant failed: {message}"
    )
    payment.transition(
        PaymentStatus.COMPLETED_BUT_ACCESS_GRANT_FAILED,
        allowed_from=(PaymentStatus.COMPLETED,),
        result_desc=str(message)[:255],
    )
    audit(
        "access_grant_failed",
        transaction_id=payment.transaction_id,
        checkout_request_id=correlation_id,
        mac_address=payment.mac_address,
        message=message,
    )
    return Outcome.terminal(PaymentStatus.COMPLETED_BUT_ACCESS_GRANT_FAILED)
