"""
Transform unit for one queued item.

`transform_job` is the entry point used by the worker pool and the local
test script. It keeps orchestration simple:
url -> download -> JPEG re-encode -> persist -> OutputDescriptor.
It touches no shared state; every failure surfaces as a `TransformError`.
"""

from __future__ import annotations

import logging
from typing import Optional

import requests

from . import config
from .errors import FetchError
from .models import Job, OutputDescriptor
from .storage import OutputStore, new_output_key
from .transcoding import JPEG_CONTENT_TYPE, reencode_jpeg

logger = logging.getLogger(__name__)


def download_image(url: str, timeout_seconds: int, session: Optional[requests.Session] = None) -> bytes:
    http = session or requests
    try:
        resp = http.get(url, timeout=(5, timeout_seconds))
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise FetchError(f"Could not download image: {exc}", url=url) from exc
    return resp.content


def transform_job(
    job: Job,
    store: OutputStore,
    settings: Optional[config.Settings] = None,
    session: Optional[requests.Session] = None,
) -> OutputDescriptor:
    """
    Fetch, transcode and persist one job's image.

    Raises:
        FetchError, TranscodeError, StorageError
    """
    settings = settings or config.get_settings()
    source = download_image(job.url, settings.request_timeout_seconds, session=session)
    jpeg_bytes = reencode_jpeg(source, quality=settings.output_quality)
    logger.info("Processed image from %s", job.url)

    location = store.save(jpeg_bytes, new_output_key(settings.output_prefix), JPEG_CONTENT_TYPE)
    return OutputDescriptor(
        request_id=job.request_id,
        group_id=job.group_id,
        item_id=job.item_id,
        output_location=location,
    )
