"""
Webhook dispatch for closed groups.

The worker whose tracker update closed a group calls `dispatch`. The
notification is attempted once inline; a failed attempt is parked in a Redis
retry set before the tracker entry is cleared, so the aggregated outputs are
never lost. `retry_due` re-sends parked notifications with exponential
backoff and moves them to a dead-letter list after `webhook_max_attempts`.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

import redis
import requests

from . import config
from .errors import WebhookDeliveryError
from .models import WebhookNotification
from .tracker import BatchTracker

logger = logging.getLogger(__name__)


class WebhookDispatcher:
    def __init__(
        self,
        client: redis.Redis,
        tracker: BatchTracker,
        settings: Optional[config.Settings] = None,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        prefix: str = "webhook",
    ):
        self.client = client
        self.tracker = tracker
        self.settings = settings or config.get_settings()
        self.session = session or requests.Session()
        self.clock = clock
        self.retry_key = f"{prefix}:retry"
        self.dead_key = f"{prefix}:dead"

    def send(self, notification: WebhookNotification) -> None:
        """POST one notification; anything but a 2xx raises WebhookDeliveryError."""
        try:
            resp = self.session.post(
                self.settings.webhook_url,
                json=notification.payload(),
                timeout=self.settings.webhook_timeout_seconds,
            )
        except requests.RequestException as exc:
            raise WebhookDeliveryError(f"Webhook transport error: {exc}") from exc
        if not 200 <= resp.status_code < 300:
            raise WebhookDeliveryError(
                "Webhook rejected notification",
                status_code=resp.status_code,
                details={"body": resp.text[:200]},
            )
        logger.info("Webhook response: %s %s", resp.status_code, resp.text[:200])

    def dispatch(self, request_id: str, group_id: str) -> bool:
        """
        Notify the consumer for one closed group, then clear its tracker entry.

        Returns True when the inline attempt succeeded. On failure the
        notification is already in the retry set when the entry is cleared.
        """
        outputs = self.tracker.outputs(request_id, group_id)
        notification = WebhookNotification(
            request_id=request_id,
            group_id=group_id,
            output_urls=[o.output_location for o in outputs],
            attempts=1,
        )
        logger.info("Calling webhook for request=%s group=%s (%d outputs)", request_id, group_id, len(outputs))
        delivered = self._attempt(notification)
        drained = self.tracker.drain_and_clear(request_id, group_id)
        if [o.output_location for o in drained] != notification.output_urls:
            logger.error(
                "Outputs changed during dispatch for request=%s group=%s: sent %d, drained %d",
                request_id,
                group_id,
                len(notification.output_urls),
                len(drained),
            )
        return delivered

    def _attempt(self, notification: WebhookNotification) -> bool:
        try:
            self.send(notification)
        except WebhookDeliveryError as exc:
            logger.error(
                "Error calling webhook for request=%s group=%s (attempt %d): %s",
                notification.request_id,
                notification.group_id,
                notification.attempts,
                exc,
            )
            self._park(notification)
            return False
        return True

    def _park(self, notification: WebhookNotification) -> None:
        if notification.attempts >= self.settings.webhook_max_attempts:
            self.client.rpush(self.dead_key, notification.to_json())
            logger.error(
                "Webhook for request=%s group=%s dead-lettered after %d attempts",
                notification.request_id,
                notification.group_id,
                notification.attempts,
            )
            return
        delay = config.backoff_delay(
            notification.attempts,
            self.settings.webhook_retry_backoff_seconds,
            self.settings.webhook_retry_backoff_seconds * 2 ** self.settings.webhook_max_attempts,
        )
        self.client.zadd(self.retry_key, {notification.to_json(): self.clock() + delay})

    def retry_due(self) -> int:
        """Re-send parked notifications whose backoff elapsed. Returns how many succeeded."""
        delivered = 0
        for member in self.client.zrangebyscore(self.retry_key, "-inf", self.clock()):
            if not self.client.zrem(self.retry_key, member):
                continue  # claimed by another process
            notification = WebhookNotification.from_json(member)
            notification.attempts += 1
            if self._attempt(notification):
                delivered += 1
        return delivered

    def pending_retries(self) -> int:
        return self.client.zcard(self.retry_key)

    def dead_letters(self) -> List[WebhookNotification]:
        return [WebhookNotification.from_json(raw) for raw in self.client.lrange(self.dead_key, 0, -1)]
