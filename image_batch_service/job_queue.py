"""
Redis-backed work queue with at-least-once delivery.

Layout under the `<queue_name>:` prefix:
 - `pending`     list of job ids waiting for a worker (consumed right, pushed left)
 - `processing`  list of job ids currently reserved by a worker
 - `leases`      zset job id -> lease deadline; expired leases are redelivered
 - `delayed`     zset job id -> time a retry becomes due
 - `job:<id>`    hash with the JSON payload, state, attempts and failure reason
 - `done:<id>`   outcome marker that suppresses duplicate completions or failures
 - `stats`       hash of terminal counters

Ownership of every move between structures is decided by an atomic Redis
primitive (LMOVE, ZREM, SET NX, Lua scripts), so several worker processes
can share one queue without a lock.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional
import uuid

import redis

from . import config
from .models import Job, OutputDescriptor

logger = logging.getLogger(__name__)

CompletedListener = Callable[[Job, OutputDescriptor], None]
FailedListener = Callable[[Job, str], None]

STATE_PENDING = "pending"
STATE_ACTIVE = "active"
STATE_DELAYED = "delayed"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"
TERMINAL_STATES = (STATE_COMPLETED, STATE_FAILED)

# KEYS: leases, processing, pending, job hash | ARGV: job_id, now
_REQUEUE = """
local deadline = redis.call('ZSCORE', KEYS[1], ARGV[1])
if not deadline or tonumber(deadline) > tonumber(ARGV[2]) then
  return 0
end
redis.call('ZREM', KEYS[1], ARGV[1])
if redis.call('LREM', KEYS[2], '1', ARGV[1]) == 0 then
  return 0
end
local state = redis.call('HGET', KEYS[4], 'state')
if state == 'completed' or state == 'failed' then
  return 0
end
redis.call('HSET', KEYS[4], 'state', 'pending')
redis.call('LPUSH', KEYS[3], ARGV[1])
return 1
"""

# KEYS: processing, leases | ARGV: deadline
_REPAIR_LEASES = """
local ids = redis.call('LRANGE', KEYS[1], '0', '-1')
for _, id in ipairs(ids) do
  redis.call('ZADD', KEYS[2], 'NX', ARGV[1], id)
end
return #ids
"""


class RedisJobQueue:
    def __init__(
        self,
        client: redis.Redis,
        settings: Optional[config.Settings] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.client = client
        self.settings = settings or config.get_settings()
        self.name = self.settings.queue_name
        self.clock = clock
        self._completed_listeners: List[CompletedListener] = []
        self._failed_listeners: List[FailedListener] = []
        self._requeue = client.register_script(_REQUEUE)
        self._repair_leases = client.register_script(_REPAIR_LEASES)

    def _key(self, *parts: str) -> str:
        return ":".join((self.name,) + parts)

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------
    def submit(self, job: Job) -> str:
        job.job_id = job.job_id or uuid.uuid4().hex
        job.attempts = 0
        pipe = self.client.pipeline(transaction=True)
        pipe.hset(
            self._key("job", job.job_id),
            mapping={"data": job.to_json(), "state": STATE_PENDING, "attempts": 0},
        )
        pipe.lpush(self._key("pending"), job.job_id)
        pipe.execute()
        logger.debug("Submitted job %s url=%s group=%s", job.job_id, job.url, job.group_id)
        return job.job_id

    def subscribe(
        self,
        on_completed: Optional[CompletedListener] = None,
        on_failed: Optional[FailedListener] = None,
    ) -> None:
        if on_completed is not None:
            self._completed_listeners.append(on_completed)
        if on_failed is not None:
            self._failed_listeners.append(on_failed)

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------
    def reserve(self, timeout: float = 0) -> Optional[Job]:
        """
        Claim the next pending job, or return None when the queue is empty.

        With `timeout > 0` the call blocks up to that many seconds.
        """
        pending, processing = self._key("pending"), self._key("processing")
        if timeout:
            job_id = self.client.blmove(pending, processing, timeout, "RIGHT", "LEFT")
        else:
            job_id = self.client.lmove(pending, processing, "RIGHT", "LEFT")
        if job_id is None:
            return None

        job_key = self._key("job", job_id)
        record = self.client.hgetall(job_key)
        if not record or record.get("state") in TERMINAL_STATES:
            # Expired record or a stale redelivery of a finished job
            self.client.lrem(processing, 1, job_id)
            self.client.zrem(self._key("leases"), job_id)
            logger.info("Dropped stale delivery of job %s", job_id)
            return None

        pipe = self.client.pipeline(transaction=True)
        pipe.hincrby(job_key, "attempts", 1)
        pipe.hset(job_key, "state", STATE_ACTIVE)
        pipe.zadd(self._key("leases"), {job_id: self.clock() + self.settings.job_lease_seconds})
        attempts, _, _ = pipe.execute()

        job = Job.from_json(record["data"])
        job.job_id = job_id
        job.attempts = int(attempts)
        return job

    def complete(self, job: Job, output: OutputDescriptor) -> bool:
        """
        Report success for a reserved job.

        Returns False when the completion was a duplicate of an already
        counted delivery; observers are not notified in that case. If an
        observer raises, the completion marker is released so a redelivery
        can report again, and the exception propagates.
        """
        marker = self._key("done", job.job_id)
        claimed = self.client.set(marker, "1", nx=True, ex=self.settings.job_retention_seconds)
        if not claimed:
            logger.info("Duplicate completion for job %s ignored", job.job_id)
            self._release(job)
            return False

        try:
            for listener in self._completed_listeners:
                listener(job, output)
        except Exception:
            self.client.delete(marker)
            raise

        self._finish(job, STATE_COMPLETED, result=output.to_json())
        logger.info("Job %s completed!", job.job_id)
        return True

    def fail(self, job: Job, reason: str) -> bool:
        """
        Report a failed attempt. Returns True when the failure is terminal.

        Non-terminal failures are parked in the delayed set with exponential
        backoff until `promote_delayed` moves them back to pending.
        """
        if job.attempts < self.settings.job_max_attempts:
            delay = config.backoff_delay(
                job.attempts,
                self.settings.job_retry_backoff_seconds,
                self.settings.job_retry_backoff_max_seconds,
            )
            pipe = self.client.pipeline(transaction=True)
            pipe.lrem(self._key("processing"), 1, job.job_id)
            pipe.zrem(self._key("leases"), job.job_id)
            pipe.hset(self._key("job", job.job_id), mapping={"state": STATE_DELAYED, "failed_reason": reason})
            pipe.zadd(self._key("delayed"), {job.job_id: self.clock() + delay})
            pipe.execute()
            logger.warning(
                "Job %s attempt %d/%d failed, retrying in %.1fs: %s",
                job.job_id,
                job.attempts,
                self.settings.job_max_attempts,
                delay,
                reason,
            )
            return False

        marker = self._key("done", job.job_id)
        claimed = self.client.set(marker, "1", nx=True, ex=self.settings.job_retention_seconds)
        if not claimed:
            logger.info("Job %s already reported, terminal failure ignored", job.job_id)
            self._release(job)
            return True

        logger.error("Job %s failed! Reason: %s", job.job_id, reason)
        try:
            for listener in self._failed_listeners:
                listener(job, reason)
        except Exception:
            # Job stays leased; lease expiry redelivers it and the failure is reported again
            self.client.delete(marker)
            raise

        self._finish(job, STATE_FAILED, failed_reason=reason)
        return True

    def _finish(self, job: Job, state: str, **fields: str) -> None:
        job_key = self._key("job", job.job_id)
        pipe = self.client.pipeline(transaction=True)
        pipe.lrem(self._key("processing"), 1, job.job_id)
        pipe.zrem(self._key("leases"), job.job_id)
        pipe.hset(job_key, mapping={"state": state, **fields})
        pipe.expire(job_key, self.settings.job_retention_seconds)
        pipe.hincrby(self._key("stats"), state, 1)
        pipe.execute()

    def _release(self, job: Job) -> None:
        """Drop a duplicate delivery without touching the recorded outcome."""
        pipe = self.client.pipeline(transaction=True)
        pipe.lrem(self._key("processing"), 1, job.job_id)
        pipe.zrem(self._key("leases"), job.job_id)
        pipe.execute()

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------
    def requeue_expired(self) -> int:
        """Return jobs whose lease ran out to the pending list."""
        now = self.clock()
        leases, processing = self._key("leases"), self._key("processing")
        moved = 0
        for job_id in self.client.zrangebyscore(leases, "-inf", now):
            returned = self._requeue(
                keys=[leases, processing, self._key("pending"), self._key("job", job_id)],
                args=[job_id, now],
            )
            if int(returned):
                moved += 1
                logger.warning("Lease expired for job %s, returned to queue", job_id)

        # A worker that died between LMOVE and ZADD leaves an unleased id behind
        self._repair_leases(keys=[processing, leases], args=[now + self.settings.job_lease_seconds])
        return moved

    def promote_delayed(self) -> int:
        """Move retries whose backoff has elapsed back to pending."""
        delayed = self._key("delayed")
        moved = 0
        for job_id in self.client.zrangebyscore(delayed, "-inf", self.clock()):
            if not self.client.zrem(delayed, job_id):
                continue
            pipe = self.client.pipeline(transaction=True)
            pipe.hset(self._key("job", job_id), "state", STATE_PENDING)
            pipe.lpush(self._key("pending"), job_id)
            pipe.execute()
            moved += 1
        return moved

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------
    def get(self, job_id: str) -> Optional[dict]:
        record = self.client.hgetall(self._key("job", job_id))
        if not record:
            return None
        record["attempts"] = int(record.get("attempts", 0))
        return record

    def counts(self) -> dict:
        stats = self.client.hgetall(self._key("stats"))
        return {
            STATE_PENDING: self.client.llen(self._key("pending")),
            STATE_ACTIVE: self.client.llen(self._key("processing")),
            STATE_DELAYED: self.client.zcard(self._key("delayed")),
            STATE_COMPLETED: int(stats.get(STATE_COMPLETED, 0)),
            STATE_FAILED: int(stats.get(STATE_FAILED, 0)),
        }
