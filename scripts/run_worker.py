"""
Start a worker pool against the configured Redis queue.

Runs until SIGINT/SIGTERM, or with --once processes whatever is pending,
runs one maintenance pass and exits.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
import signal
import sys
import threading

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from image_batch_service import config
from image_batch_service.connection import close_redis, create_redis
from image_batch_service.job_queue import RedisJobQueue
from image_batch_service.queue_worker import CompletionAggregator, WorkerPool
from image_batch_service.storage import build_output_store
from image_batch_service.tracker import BatchTracker
from image_batch_service.webhook import WebhookDispatcher

logger = logging.getLogger("run_worker")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run image batch workers")
    parser.add_argument("--concurrency", type=int, default=None, help="Worker threads (default: WORKER_CONCURRENCY)")
    parser.add_argument("--once", action="store_true", help="Drain pending jobs and exit")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    settings = config.get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

    client = create_redis(settings)
    queue = RedisJobQueue(client, settings=settings)
    tracker = BatchTracker(client, settings=settings)
    dispatcher = WebhookDispatcher(client, tracker, settings=settings)
    CompletionAggregator(tracker, dispatcher).attach(queue)
    pool = WorkerPool(
        queue,
        build_output_store(settings),
        dispatcher=dispatcher,
        settings=settings,
        concurrency=args.concurrency,
    )

    try:
        if args.once:
            pool.run_maintenance()
            processed = pool.drain()
            logger.info("Processed %d job(s)", processed)
            return

        stopped = threading.Event()
        signal.signal(signal.SIGINT, lambda *_: stopped.set())
        signal.signal(signal.SIGTERM, lambda *_: stopped.set())
        pool.start()
        stopped.wait()
        pool.stop()
    finally:
        close_redis(client)


if __name__ == "__main__":
    main()
