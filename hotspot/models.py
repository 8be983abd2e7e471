"""
Models for Qonnect Hotspot Billing
"""

import logging
import uuid

from django.db import models
from django.db.models import Q
from django.utils import timezone

logger = logging.getLogger(__name__)


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    FRAUD_DETECTED = "fraud_detected", "Fraud detected"
    VERIFICATION_FAILED = "verification_failed", "Verification failed"
    COMPLETED_BUT_ACCESS_GRANT_FAILED = (
        "completed_but_access_grant_failed",
        "Completed but access grant failed",
    )
    EXPIRED = "expired", "Expired"


TERMINAL_STATUSES = frozenset(
    status for status in PaymentStatus.values if status != PaymentStatus.PENDING
)

# Statuses the portal shows as "payment did not go through"
UNSUCCESSFUL_STATUSES = frozenset(
    [
        PaymentStatus.FAILED,
        PaymentStatus.FRAUD_DETECTED,
        PaymentStatus.VERIFICATION_FAILED,
        PaymentStatus.COMPLETED_BUT_ACCESS_GRANT_FAILED,
        PaymentStatus.EXPIRED,
    ]
)


def generate_transaction_id():
    return f"QNT-{uuid.uuid4().hex[:16].upper()}"


class User(models.Model):
    """
    Hotspot customer, keyed by the M-Pesa phone number that paid.
    Upserted whenever a session is granted.
    """

    STATUS_CHOICES = [
        ("active", "Active"),
        ("blocked", "Blocked"),
        ("inactive", "Inactive"),
    ]

    phone_number = models.CharField(max_length=15, unique=True)
    last_mac_address = models.CharField(max_length=17, blank=True, null=True)
    status = models.CharField(max_length=10, choices=STATUS_CHOICES, default="active")
    created_at = models.DateTimeField(auto_now_add=True)
    last_seen = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]

    def __str__(self):
        return f"{self.phone_number} ({self.status})"

    @classmethod
    def touch(cls, phone_number, mac_address=None, now=None):
        """Create or refresh the user seen at session grant time."""
        now = now or timezone.now()
        user, created = cls.objects.get_or_create(phone_number=phone_number)
        user.last_mac_address = mac_address or user.last_mac_address
        user.last_seen = now
        if user.status == "inactive":
            user.status = "active"
        user.save(update_fields=["last_mac_address", "last_seen", "status"])
        if created:
            logger.info(f"👤 New hotspot user {phone_number}")
        return user


class PaymentRecord(models.Model):
    """
    One M-Pesa STK purchase of hotspot time.

    Created ``pending`` by the initiation flow. Only the reconciliation
    worker and the timeout sweeper move it out of ``pending``, and every
    move is a conditional update so a terminal row never changes again.
    """

    transaction_id = models.CharField(
        max_length=40, unique=True, default=generate_transaction_id
    )
    checkout_request_id = models.CharField(
        max_length=100, unique=True, null=True, blank=True
    )
    merchant_request_id = models.CharField(max_length=100, blank=True, null=True)
    phone_number = models.CharField(max_length=15)
    amount = models.DecimalField(max_digits=10, decimal_places=2)
    package_code = models.CharField(max_length=20)
    mac_address = models.CharField(max_length=17)
    client_ip = models.GenericIPAddressField(null=True, blank=True)
    status = models.CharField(
        max_length=40,
        choices=PaymentStatus.choices,
        default=PaymentStatus.PENDING,
        db_index=True,
    )
    receipt_number = models.CharField(max_length=50, blank=True, null=True)
    result_code = models.IntegerField(null=True, blank=True)
    result_desc = models.CharField(max_length=255, blank=True, null=True)
    access_expires_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    terminal_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(
                fields=["status", "created_at"], name="hotspot_pay_status_created_idx"
            ),
        ]

    def __str__(self):
        return f"{self.phone_number} - KES {self.amount} - {self.status}"

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    @property
    def is_successful(self):
        return self.status == PaymentStatus.COMPLETED

    def transition(self, to_status, allowed_from=(PaymentStatus.PENDING,), **fields):
        """
        Conditionally move this payment to ``to_status``.

        The UPDATE only matches while the row is still in one of
        ``allowed_from``; returns False when another writer got there first.
        On success the instance is refreshed in memory.
        """
        now = timezone.now()
        changes = dict(fields)
        changes["status"] = to_status
        changes["updated_at"] = now
        if to_status in TERMINAL_STATUSES and "terminal_at" not in changes:
            changes["terminal_at"] = now

        updated = PaymentRecord.objects.filter(
            pk=self.pk, status__in=list(allowed_from)
        ).update(**changes)
        if updated:
            for name, value in changes.items():
                setattr(self, name, value)
            return True
        return False

    def mark_failed(self, result_code=None, result_desc=None):
        """Mark payment as failed (gateway reported a non-zero result)"""
        return self.transition(
            PaymentStatus.FAILED, result_code=result_code, result_desc=result_desc
        )

    def mark_expired(self):
        return self.transition(
            PaymentStatus.EXPIRED, result_desc="No confirmation received in time"
        )


class SessionRecord(models.Model):
    """Network access granted to a device for a paid window."""

    DISCONNECT_REASONS = [
        ("none", "None"),
        ("user", "User"),
        ("admin", "Admin"),
        ("expired", "Expired"),
        ("error", "Error"),
    ]

    user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="sessions")
    payment = models.ForeignKey(
        PaymentRecord,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="sessions",
    )
    mac_address = models.CharField(max_length=17, db_index=True)
    ip_address = models.GenericIPAddressField(null=True, blank=True)
    granted_at = models.DateTimeField(default=timezone.now)
    expires_at = models.DateTimeField()
    disconnected_at = models.DateTimeField(null=True, blank=True)
    disconnect_reason = models.CharField(
        max_length=10, choices=DISCONNECT_REASONS, default="none"
    )

    class Meta:
        ordering = ["-granted_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["mac_address"],
                condition=Q(disconnected_at__isnull=True),
                name="one_open_session_per_mac",
            ),
        ]

    def __str__(self):
        return f"{self.mac_address} until {self.expires_at}"

    def is_active(self, now=None):
        now = now or timezone.now()
        return self.disconnected_at is None and self.expires_at > now

    def end(self, reason, now=None):
        """
        Close this session. Conditional on it still being open; returns
        False when it was already closed by someone else.
        """
        now = now or timezone.now()
        updated = SessionRecord.objects.filter(
            pk=self.pk, disconnected_at__isnull=True
        ).update(disconnected_at=now, disconnect_reason=reason)
        if updated:
            self.disconnected_at = now
            self.disconnect_reason = reason
            return True
        return False


class AuditEntry(models.Model):
    """Append-only security/operations trail"""

    action = models.CharField(max_length=64, db_index=True)
    details = models.JSONField(default=dict, blank=True)
    actor = models.CharField(max_length=64, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ["-created_at"]
        verbose_name_plural = "Audit entries"

    def __str__(self):
        return f"{self.created_at:%Y-%m-%d %H:%M:%S} {self.action}"

    def save(self, *args, **kwargs):
        if self.pk is not None:
            raise ValueError("Audit entries are append-only")
        super().save(*args, **kwargs)


class ReconciliationJob(models.Model):
    """
    Durable reconciliation queue entry, one per M-Pesa CheckoutRequestID.

    Failed runs are rescheduled with exponential backoff; jobs that use up
    their attempts are kept as ``dead`` for manual inspection.
    """

    STATUS_CHOICES = [
        ("queued", "Queued"),
        ("in_flight", "In flight"),
        ("completed", "Completed"),
        ("dead", "Dead"),
    ]

    job_key = models.CharField(max_length=100, unique=True)
    payload = models.JSONField(default=dict)
    status = models.CharField(
        max_length=12, choices=STATUS_CHOICES, default="queued", db_index=True
    )
    attempts = models.PositiveIntegerField(default=0)
    max_attempts = models.PositiveIntegerField(default=3)
    next_attempt_at = models.DateTimeField(default=timezone.now, db_index=True)
    locked_at = models.DateTimeField(null=True, blank=True)
    last_error = models.TextField(blank=True, null=True)
    result = models.JSONField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    completed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        ordering = ["next_attempt_at", "id"]

    def __str__(self):
        return f"{self.job_key} ({self.status}, attempt {self.attempts}/{self.max_attempts})"

    @property
    def can_retry(self):
        return self.attempts < self.max_attempts
