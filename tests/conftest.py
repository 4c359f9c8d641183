"""
Shared fixtures: an isolated fakeredis server per test, deterministic
settings, a controllable clock, an in-memory output store and a recording
HTTP session for webhook calls.
"""

import fakeredis
import pytest

from image_batch_service.config import Settings
from image_batch_service.job_queue import RedisJobQueue
from image_batch_service.models import Job, OutputDescriptor
from image_batch_service.queue_worker import CompletionAggregator, WorkerPool
from image_batch_service.storage import OutputStore
from image_batch_service.tracker import BatchTracker
from image_batch_service.webhook import WebhookDispatcher


class FakeClock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class MemoryStore(OutputStore):
    def __init__(self):
        self.objects = {}

    def save(self, data, key, content_type):
        self.objects[key] = data
        return f"mem://{key}"


class FakeResponse:
    def __init__(self, status_code=200, text="{}"):
        self.status_code = status_code
        self.text = text


class RecordingSession:
    """Stands in for requests.Session; replies with queued status codes (default 200)."""

    def __init__(self, statuses=None):
        self.statuses = list(statuses or [])
        self.calls = []

    def post(self, url, json=None, timeout=None):
        self.calls.append({"url": url, "json": json, "timeout": timeout})
        status = self.statuses.pop(0) if self.statuses else 200
        if isinstance(status, Exception):
            raise status
        return FakeResponse(status_code=status)


@pytest.fixture
def redis_client():
    server = fakeredis.FakeServer()
    return fakeredis.FakeRedis(server=server, decode_responses=True)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        redis_url="redis://unused:6379/0",
        queue_name="testQueue",
        output_dir=tmp_path / "out",
        webhook_url="http://hooks.test/webhook",
        job_max_attempts=3,
        job_retry_backoff_seconds=10.0,
        job_retry_backoff_max_seconds=60.0,
        job_lease_seconds=30,
        webhook_max_attempts=3,
        webhook_retry_backoff_seconds=5.0,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def webhook_session():
    return RecordingSession()


@pytest.fixture
def queue(redis_client, settings, clock):
    return RedisJobQueue(redis_client, settings=settings, clock=clock)


@pytest.fixture
def tracker(redis_client, settings):
    return BatchTracker(redis_client, settings=settings)


@pytest.fixture
def dispatcher(redis_client, tracker, settings, webhook_session, clock):
    return WebhookDispatcher(redis_client, tracker, settings=settings, session=webhook_session, clock=clock)


@pytest.fixture
def pool(queue, tracker, dispatcher, store, settings):
    CompletionAggregator(tracker, dispatcher).attach(queue)
    return WorkerPool(queue, store, dispatcher=dispatcher, settings=settings, concurrency=2)


def make_output(job_or_ids, location=None):
    if isinstance(job_or_ids, Job):
        request_id, group_id, item_id = job_or_ids.request_id, job_or_ids.group_id, job_or_ids.item_id
    else:
        request_id, group_id, item_id = job_or_ids
    return OutputDescriptor(
        request_id=request_id,
        group_id=group_id,
        item_id=item_id,
        output_location=location or f"mem://{group_id}/{item_id}.jpg",
    )
