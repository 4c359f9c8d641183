"""
FastAPI layer over the batch pipeline.

Endpoints:
 - GET  /health
 - POST /batches               register groups and enqueue one job per url
 - GET  /status/{request_id}   in-flight groups and queue counters
 - POST /webhook               development sink for group notifications
"""

from __future__ import annotations

from contextlib import asynccontextmanager
import logging
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel, HttpUrl
import redis

from . import config
from .connection import close_redis, create_redis
from .errors import TrackerError
from .job_queue import RedisJobQueue
from .submission import submit_batch
from .tracker import BatchTracker

logger = logging.getLogger(__name__)


class BatchRequest(BaseModel):
    request_id: Optional[str] = None
    groups: Dict[str, List[HttpUrl]]


class BatchResponse(BaseModel):
    request_id: str
    job_count: int


class GroupStatusResponse(BaseModel):
    group_id: str
    expected: int
    completed: int
    failed: int
    outputs: List[str]


class StatusResponse(BaseModel):
    request_id: str
    groups: List[GroupStatusResponse]
    queue: Dict[str, int]


class WebhookPayload(BaseModel):
    request_id: str
    product_oid: str
    output_urls: List[str]


def create_app(client: Optional[redis.Redis] = None, settings: Optional[config.Settings] = None) -> FastAPI:
    """Build the app; run with `uvicorn --factory image_batch_service.api:create_app`."""
    settings = settings or config.get_settings()
    logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
    owns_client = client is None
    client = client or create_redis(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        if owns_client:
            close_redis(client)

    app = FastAPI(title="Image Batch Service", version="0.1.0", lifespan=lifespan)
    app.state.queue = RedisJobQueue(client, settings=settings)
    app.state.tracker = BatchTracker(client, settings=settings)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    @app.post("/batches", response_model=BatchResponse, status_code=202)
    def create_batch(body: BatchRequest, request: Request):
        groups = {group_id: [str(url) for url in urls] for group_id, urls in body.groups.items()}
        try:
            request_id, job_ids = submit_batch(
                request.app.state.queue,
                request.app.state.tracker,
                groups,
                request_id=body.request_id,
            )
        except ValueError as ve:
            raise HTTPException(status_code=400, detail=str(ve)) from ve
        except TrackerError as exc:
            logger.exception("Batch registration failed: %s", exc)
            raise HTTPException(status_code=409, detail=exc.message) from exc
        return BatchResponse(request_id=request_id, job_count=len(job_ids))

    @app.get("/status/{request_id}", response_model=StatusResponse)
    def status(request_id: str, request: Request):
        groups = request.app.state.tracker.status(request_id)
        return StatusResponse(
            request_id=request_id,
            groups=[GroupStatusResponse(**{k: v for k, v in g.to_dict().items() if k != "request_id"}) for g in groups],
            queue=request.app.state.queue.counts(),
        )

    @app.post("/webhook")
    def webhook(body: WebhookPayload):
        logger.info(
            "Webhook received request=%s product=%s outputs=%d",
            body.request_id,
            body.product_oid,
            len(body.output_urls),
        )
        return {"received": True, "product_oid": body.product_oid}

    return app
