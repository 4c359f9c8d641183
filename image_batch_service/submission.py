"""Submission boundary: register expected counts, then enqueue items."""

from __future__ import annotations

import logging
from typing import Dict, List, Optional, Sequence
import uuid

from .errors import TrackerError
from .job_queue import RedisJobQueue
from .models import Job
from .tracker import BatchTracker

logger = logging.getLogger(__name__)


def submit_batch(
    queue: RedisJobQueue,
    tracker: BatchTracker,
    groups: Dict[str, Sequence[str]],
    request_id: Optional[str] = None,
) -> tuple[str, List[str]]:
    """
    Enqueue one job per url for every group of a request.

    All expected counts are written before the first job is enqueued, so no
    worker can complete an item of a group whose count is not yet recorded.
    Returns the request id and the submitted job ids.
    """
    groups = {group_id: list(urls) for group_id, urls in groups.items() if urls}
    if not groups:
        raise ValueError("batch must contain at least one url")
    request_id = request_id or str(uuid.uuid4())

    registered = []
    try:
        for group_id, urls in groups.items():
            tracker.register_group(request_id, group_id, len(urls))
            registered.append(group_id)
    except TrackerError:
        # Nothing was enqueued yet; drop the entries this call created
        for group_id in registered:
            tracker.drain_and_clear(request_id, group_id)
        raise

    job_ids = []
    for group_id, urls in groups.items():
        for index, url in enumerate(urls):
            job = Job(url=url, request_id=request_id, group_id=group_id, item_id=f"{group_id}:{index}")
            job_ids.append(queue.submit(job))

    logger.info("Submitted request %s: %d groups, %d jobs", request_id, len(groups), len(job_ids))
    return request_id, job_ids
