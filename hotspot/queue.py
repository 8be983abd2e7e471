"""
Database-backed reconciliation queue.

One ReconciliationJob per M-Pesa CheckoutRequestID. Duplicate callbacks
collapse onto the same row, failed runs are retried with exponential
backoff, and exhausted jobs are kept as ``dead`` rather than deleted.
"""

import logging
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.db.models import Count, F
from django.utils import timezone

from .models import ReconciliationJob

logger = logging.getLogger(__name__)


class ReconciliationQueue:
    def __init__(self, max_attempts=None, backoff_seconds=None):
        self.max_attempts = max_attempts or settings.RECONCILE_MAX_ATTEMPTS
        self.backoff_seconds = (
            backoff_seconds
            if backoff_seconds is not None
            else settings.RECONCILE_BACKOFF_SECONDS
        )

    def backoff_delay(self, attempts):
        """2s, 4s, 8s... for attempts 1, 2, 3..."""
        return timedelta(seconds=self.backoff_seconds * (2 ** max(attempts - 1, 0)))

    def enqueue(self, job_key, payload):
        """
        Add a job unless one with the same key is already waiting, running
        or dead. Returns ``(job, created)``.

        A completed job is re-armed; reconciliation is idempotent so the
        rerun finds the payment terminal and does nothing.
        """
        now = timezone.now()
        with transaction.atomic():
            job, created = ReconciliationJob.objects.get_or_create(
                job_key=job_key,
                defaults={
                    "payload": payload,
                    "max_attempts": self.max_attempts,
                    "next_attempt_at": now,
                },
            )

        if created:
            logger.info(f"📥 Reconciliation job enqueued: {job_key}")
            return job, True

        if job.status == "completed":
            rearmed = ReconciliationJob.objects.filter(
                pk=job.pk, status="completed"
            ).update(
                status="queued",
                payload=payload,
                attempts=0,
                next_attempt_at=now,
                locked_at=None,
                last_error=None,
                updated_at=now,
            )
            if rearmed:
                job.refresh_from_db()
                logger.info(f"🔁 Re-armed completed job for duplicate callback: {job_key}")
                return job, True

        logger.info(f"ℹ️ Duplicate callback for {job_key} (job is {job.status})")
        return job, False

    def claim(self, limit=1, now=None):
        """
        Move up to ``limit`` due jobs to ``in_flight`` and return them.
        Each row is claimed with a conditional update, so concurrent
        workers never receive the same job.
        """
        now = now or timezone.now()
        candidate_ids = list(
            ReconciliationJob.objects.filter(status="queued", next_attempt_at__lte=now)
            .order_by("next_attempt_at", "id")
            .values_list("id", flat=True)[:limit]
        )

        claimed = []
        for job_id in candidate_ids:
            won = ReconciliationJob.objects.filter(pk=job_id, status="queued").update(
                status="in_flight",
                locked_at=now,
                attempts=F("attempts") + 1,
                updated_at=now,
            )
            if won:
                claimed.append(job_id)

        if not claimed:
            return []
        return list(ReconciliationJob.objects.filter(pk__in=claimed).order_by("id"))

    def complete(self, job, result=None):
        now = timezone.now()
        updated = ReconciliationJob.objects.filter(pk=job.pk, status="in_flight").update(
            status="completed",
            result=result,
            completed_at=now,
            locked_at=None,
            updated_at=now,
        )
        if updated:
            job.status = "completed"
            job.result = result
            job.completed_at = now
        else:
            logger.warning(f"Job {job.job_key} was no longer in flight when completed")
        return bool(updated)

    def retry_or_bury(self, job, error):
        """
        Schedule the next attempt with exponential backoff, or mark the
        job dead once ``max_attempts`` is used up. Returns the new status.
        """
        now = timezone.now()
        error_text = str(error)[:2000]
        job.refresh_from_db(fields=["attempts", "max_attempts"])

        if job.can_retry:
            delay = self.backoff_delay(job.attempts)
            new_status = "queued"
            changes = {"next_attempt_at": now + delay}
            logger.warning(
                f"🔁 Job {job.job_key} attempt {job.attempts}/{job.max_attempts} "
                f"failed, retrying in {delay.total_seconds():.0f}s: {error_text}"
            )
        else:
            new_status = "dead"
            changes = {"completed_at": now}
            logger.error(
                f"💀 Job {job.job_key} failed after {job.attempts} attempts: {error_text}"
            )

        ReconciliationJob.objects.filter(pk=job.pk, status="in_flight").update(
            status=new_status,
            last_error=error_text,
            locked_at=None,
            updated_at=now,
            **changes,
        )
        job.status = new_status
        job.last_error = error_text
        return new_status

    def release_stale(self, visibility_timeout=None, now=None):
        """
        Return jobs stuck ``in_flight`` (worker died mid-run) to the queue.
        Jobs that already used every attempt are buried instead.
        """
        now = now or timezone.now()
        timeout = (
            visibility_timeout
            if visibility_timeout is not None
            else settings.RECONCILE_VISIBILITY_TIMEOUT
        )
        cutoff = now - timedelta(seconds=timeout)
        stale = ReconciliationJob.objects.filter(
            status="in_flight", locked_at__lt=cutoff
        )

        buried = stale.filter(attempts__gte=F("max_attempts")).update(
            status="dead",
            last_error="Worker stalled on final attempt",
            locked_at=None,
            completed_at=now,
            updated_at=now,
        )
        released = stale.filter(attempts__lt=F("max_attempts")).update(
            status="queued", locked_at=None, next_attempt_at=now, updated_at=now
        )

        if released or buried:
            logger.warning(
                f"⏰ Released {released} stalled job(s), buried {buried}"
            )
        return {"released": released, "buried": buried}

    def requeue_dead(self, job_key=None):
        """Operator re-arm of dead jobs (all, or just ``job_key``)."""
        now = timezone.now()
        dead = ReconciliationJob.objects.filter(status="dead")
        if job_key:
            dead = dead.filter(job_key=job_key)
        count = dead.update(
            status="queued",
            attempts=0,
            next_attempt_at=now,
            completed_at=None,
            updated_at=now,
        )
        if count:
            logger.info(f"🔁 Re-queued {count} dead job(s)")
        return count

    def stats(self):
        counts = {status: 0 for status, _ in ReconciliationJob.STATUS_CHOICES}
        for row in ReconciliationJob.objects.order_by().values("status").annotate(
            total=Count("id")
        ):
            counts[row["status"]] = row["total"]
        return counts
