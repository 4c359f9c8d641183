"""
Worker pool and completion aggregation.

`WorkerPool` runs N threads that pull jobs from the Redis queue and invoke
the transform unit. `CompletionAggregator` subscribes to the queue's
lifecycle events, feeds the batch tracker and triggers the webhook once a
group closes. Several processes can run a pool against the same Redis.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

import requests

from . import config
from .errors import ImageBatchError, TransformError
from .job_queue import RedisJobQueue
from .models import Job, OutputDescriptor
from .pipeline import transform_job
from .storage import OutputStore
from .tracker import BatchTracker
from .webhook import WebhookDispatcher

logger = logging.getLogger(__name__)


class CompletionAggregator:
    """Queue observer that turns per-job events into per-group notifications."""

    def __init__(self, tracker: BatchTracker, dispatcher: WebhookDispatcher):
        self.tracker = tracker
        self.dispatcher = dispatcher

    def attach(self, queue: RedisJobQueue) -> None:
        queue.subscribe(on_completed=self.on_completed, on_failed=self.on_failed)

    def on_completed(self, job: Job, output: OutputDescriptor) -> None:
        update = self.tracker.record_completion(job.request_id, job.group_id, output)
        if self.tracker.is_batch_complete(update):
            self.dispatcher.dispatch(job.request_id, job.group_id)

    def on_failed(self, job: Job, reason: str) -> None:
        update = self.tracker.record_failure(job.request_id, job.group_id)
        if self.tracker.is_batch_complete(update):
            logger.warning(
                "Group request=%s group=%s closed with %d failed item(s); dispatching partial outputs",
                job.request_id,
                job.group_id,
                update.failed,
            )
            self.dispatcher.dispatch(job.request_id, job.group_id)
        elif update.accepted and not self.tracker.failures_close_batch:
            logger.warning(
                "Group request=%s group=%s can no longer reach %d completions; no webhook will fire",
                job.request_id,
                job.group_id,
                update.expected,
            )


class WorkerPool:
    def __init__(
        self,
        queue: RedisJobQueue,
        store: OutputStore,
        dispatcher: Optional[WebhookDispatcher] = None,
        settings: Optional[config.Settings] = None,
        concurrency: Optional[int] = None,
    ):
        self.queue = queue
        self.store = store
        self.dispatcher = dispatcher
        self.settings = settings or config.get_settings()
        self.concurrency = concurrency or self.settings.worker_concurrency
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    def process_one(self, job: Job, session: Optional[requests.Session] = None) -> bool:
        """Run one reserved job to a reported outcome. Returns True on success."""
        logger.info("Processing job %s url=%s attempt=%d", job.job_id, job.url, job.attempts)
        try:
            output = transform_job(job, self.store, settings=self.settings, session=session)
        except TransformError as exc:
            logger.error("Error processing job %s: %s", job.job_id, exc)
            self._report_failure(job, str(exc))
            return False

        try:
            self.queue.complete(job, output)
        except ImageBatchError as exc:
            # Tracker write failed; the completion marker was released so the retry counts once
            logger.exception("Completion handling failed for job %s", job.job_id)
            self._report_failure(job, str(exc))
            return False
        return True

    def _report_failure(self, job: Job, reason: str) -> None:
        try:
            self.queue.fail(job, reason)
        except ImageBatchError:
            # Job keeps its lease and is redelivered once the lease expires
            logger.exception("Failure handling failed for job %s", job.job_id)

    def drain(self) -> int:
        """Process jobs in the calling thread until the pending list is empty."""
        processed = 0
        while True:
            job = self.queue.reserve()
            if job is None:
                return processed
            self.process_one(job)
            processed += 1

    def run_maintenance(self) -> None:
        expired = self.queue.requeue_expired()
        promoted = self.queue.promote_delayed()
        delivered = self.dispatcher.retry_due() if self.dispatcher else 0
        if expired or promoted or delivered:
            logger.info(
                "Maintenance: requeued=%d promoted=%d webhooks_delivered=%d",
                expired,
                promoted,
                delivered,
            )

    def _run_worker(self) -> None:
        session = requests.Session()
        while not self._stop.is_set():
            try:
                job = self.queue.reserve(timeout=1)
                if job is None:
                    continue
                self.process_one(job, session=session)
            except Exception:  # noqa: BLE001
                logger.exception("Worker loop error")
                self._stop.wait(0.1)

    def _run_maintenance_loop(self) -> None:
        while not self._stop.wait(self.settings.maintenance_interval_seconds):
            try:
                self.run_maintenance()
            except Exception:  # noqa: BLE001
                logger.exception("Maintenance loop error")

    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for index in range(self.concurrency):
            thread = threading.Thread(target=self._run_worker, name=f"worker-{index}", daemon=True)
            thread.start()
            self._threads.append(thread)
        maintenance = threading.Thread(target=self._run_maintenance_loop, name="maintenance", daemon=True)
        maintenance.start()
        self._threads.append(maintenance)
        logger.info("Worker pool started with %d workers on queue %s", self.concurrency, self.queue.name)

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
        logger.info("Worker pool stopped")
