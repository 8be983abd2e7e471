"""
Reconciliation worker pool.

Claims jobs from the ReconciliationQueue and runs reconcile_payment for
each on a bounded thread pool, throttled by a rate limiter.

Usage:
    pool = ReconciliationWorkerPool(ReconciliationQueue(), DarajaAPI(),
                                    NetworkAccessController())
    pool.start()
    ...
    pool.stop()   # stops claiming, waits for in-flight jobs
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor

from django.conf import settings
from django.db import close_old_connections

from .reconciliation import reconcile_payment

logger = logging.getLogger(__name__)


class RateLimiter:
    """
    Fixed-window limiter: at most ``limit`` acquisitions per ``period``
    seconds, shared by every thread of the pool.
    """

    def __init__(self, limit, period=1.0, clock=time.monotonic, sleep=time.sleep):
        self.limit = limit
        self.period = period
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._window_start = None
        self._count = 0

    def try_acquire(self):
        with self._lock:
            now = self._clock()
            if self._window_start is None or now - self._window_start >= self.period:
                self._window_start = now
                self._count = 0
            if self._count < self.limit:
                self._count += 1
                return True
            return False

    def wait_time(self):
        with self._lock:
            if self._window_start is None:
                return 0.0
            return max(0.0, self.period - (self._clock() - self._window_start))

    def acquire(self, timeout=None):
        """Block until a slot is free; False if ``timeout`` elapses first."""
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            if self.try_acquire():
                return True
            wait = self.wait_time() or 0.01
            if deadline is not None:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                wait = min(wait, remaining)
            self._sleep(wait)


class ReconciliationWorkerPool:
    def __init__(self, queue, gateway, controller, concurrency=None,
                 rate_limiter=None, poll_interval=None, visibility_timeout=None):
        self.queue = queue
        self.gateway = gateway
        self.controller = controller
        self.concurrency = concurrency or settings.RECONCILE_WORKER_CONCURRENCY
        self.rate_limiter = rate_limiter or RateLimiter(
            settings.RECONCILE_RATE_LIMIT, settings.RECONCILE_RATE_PERIOD
        )
        self.poll_interval = (
            poll_interval
            if poll_interval is not None
            else settings.RECONCILE_POLL_INTERVAL
        )
        self.visibility_timeout = (
            visibility_timeout
            if visibility_timeout is not None
            else settings.RECONCILE_VISIBILITY_TIMEOUT
        )

        self._stop_event = threading.Event()
        self._executor = None
        self._dispatcher = None
        self._in_flight = set()
        self._in_flight_lock = threading.Lock()

    # Job execution
    # -------------

    def process_job(self, job):
        """Run one claimed job and record the result on the queue."""
        # Long-running threads must not hold on to stale DB connections
        close_old_connections()
        try:
            payload = job.payload or {}
            correlation_id = payload.get("correlation_id") or job.job_key
            logger.info(f"🔄 Processing payment: {correlation_id} (attempt {job.attempts})")

            try:
                outcome = reconcile_payment(
                    correlation_id,
                    payload.get("raw_callback"),
                    self.gateway,
                    self.controller,
                )
            except Exception as e:
                logger.exception(f"❌ Reconciliation crashed for {correlation_id}")
                self.queue.retry_or_bury(job, e)
                return None

            if outcome.is_retryable:
                self.queue.retry_or_bury(job, outcome.error)
            else:
                self.queue.complete(job, outcome.as_dict())
                logger.info(f"✅ Job {correlation_id} done: {outcome.kind} {outcome.status}")
            return outcome
        finally:
            close_old_connections()

    def process_available(self, limit=None):
        """
        Synchronously drain due jobs on the calling thread (``--once`` mode).
        Returns a summary dict.
        """
        self.queue.release_stale(self.visibility_timeout)
        processed = retried = crashed = 0
        while limit is None or processed + retried + crashed < limit:
            self.rate_limiter.acquire()
            jobs = self.queue.claim(1)
            if not jobs:
                break
            outcome = self.process_job(jobs[0])
            if outcome is None:
                crashed += 1
            elif outcome.is_retryable:
                retried += 1
            else:
                processed += 1
        return {"success": True, "processed": processed, "retried": retried, "crashed": crashed}

    # Continuous mode
    # ---------------

    @property
    def running(self):
        return self._dispatcher is not None and not self._stop_event.is_set()

    def start(self):
        if self.running:
            logger.warning("Reconciliation worker pool is already running")
            return
        self._stop_event.clear()
        self._executor = ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="reconcile"
        )
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, name="reconcile-dispatcher", daemon=True
        )
        self._dispatcher.start()
        logger.info(
            f"🚀 Reconciliation workers started (concurrency {self.concurrency}, "
            f"{self.rate_limiter.limit} jobs/{self.rate_limiter.period}s)"
        )

    def stop(self, timeout=None):
        """Stop claiming new jobs and wait for in-flight ones to finish."""
        self._stop_event.set()
        if self._dispatcher:
            self._dispatcher.join(timeout=timeout)
        if self._executor:
            self._executor.shutdown(wait=True)
        self._dispatcher = None
        self._executor = None
        logger.info("Reconciliation workers stopped")

    def request_stop(self):
        """Ask the dispatcher to stop claiming; safe from a signal handler."""
        self._stop_event.set()

    def wait(self):
        while not self._stop_event.wait(timeout=1):
            pass

    def _free_slots(self):
        with self._in_flight_lock:
            return self.concurrency - len(self._in_flight)

    def _job_done(self, future):
        with self._in_flight_lock:
            self._in_flight.discard(future)

    def _dispatch_loop(self):
        last_stale_check = 0.0
        while not self._stop_event.is_set():
            try:
                if time.monotonic() - last_stale_check >= self.poll_interval * 30:
                    self.queue.release_stale(self.visibility_timeout)
                    last_stale_check = time.monotonic()

                if self._free_slots() <= 0:
                    self._stop_event.wait(self.poll_interval / 10)
                    continue

                if not self.rate_limiter.acquire(timeout=self.poll_interval):
                    continue
                if self._stop_event.is_set():
                    break

                jobs = self.queue.claim(1)
                if not jobs:
                    self._stop_event.wait(self.poll_interval)
                    continue

                future = self._executor.submit(self.process_job, jobs[0])
                with self._in_flight_lock:
                    self._in_flight.add(future)
                future.add_done_callback(self._job_done)
            except Exception as e:
                logger.error(f"Error in reconciliation dispatcher loop: {e}")
                self._stop_event.wait(5)
            finally:
                close_old_connections()
