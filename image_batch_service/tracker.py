"""
Per-group completion tracking.

One tracker entry exists per (request_id, group_id):
 - `tracker:<request>:<group>`          hash: expected, completed, failed
 - `tracker:<request>:<group>:outputs`  list of serialized OutputDescriptors
 - `tracker:<request>:groups`           set of groups still in flight

Every mutation is a single Lua script so the counter and the outputs list
move together. Exactly one `record_completion` call observes the closing
count for a group; only that caller drains the entry.
"""

from __future__ import annotations

import logging
from typing import List, Optional

import redis

from . import config
from .errors import TrackerError
from .models import GroupStatus, OutputDescriptor, TrackerUpdate

logger = logging.getLogger(__name__)

# KEYS: entry hash, groups index | ARGV: expected, group_id
_REGISTER = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return 0
end
redis.call('HSET', KEYS[1], 'expected', ARGV[1], 'completed', '0', 'failed', '0')
redis.call('SADD', KEYS[2], ARGV[2])
return 1
"""

# KEYS: entry hash, outputs list | ARGV: field, output json, failures-close flag
_RECORD = """
local expected = redis.call('HGET', KEYS[1], 'expected')
if not expected then
  return {0, 0, 0, 0}
end
expected = tonumber(expected)
local completed = tonumber(redis.call('HGET', KEYS[1], 'completed') or '0')
local failed = tonumber(redis.call('HGET', KEYS[1], 'failed') or '0')
local used = completed
if ARGV[1] == 'failed' or ARGV[3] == '1' then
  used = completed + failed
end
if used >= expected then
  return {0, completed, expected, failed}
end
if ARGV[1] == 'completed' then
  completed = redis.call('HINCRBY', KEYS[1], 'completed', '1')
  redis.call('RPUSH', KEYS[2], ARGV[2])
else
  failed = redis.call('HINCRBY', KEYS[1], 'failed', '1')
end
return {1, completed, expected, failed}
"""

# KEYS: entry hash, outputs list, groups index | ARGV: group_id
_DRAIN = """
local outputs = redis.call('LRANGE', KEYS[2], '0', '-1')
redis.call('DEL', KEYS[1], KEYS[2])
redis.call('SREM', KEYS[3], ARGV[1])
return outputs
"""


class BatchTracker:
    def __init__(
        self,
        client: redis.Redis,
        settings: Optional[config.Settings] = None,
        prefix: str = "tracker",
    ):
        self.client = client
        self.settings = settings or config.get_settings()
        self.prefix = prefix
        self._register = client.register_script(_REGISTER)
        self._record = client.register_script(_RECORD)
        self._drain = client.register_script(_DRAIN)

    @property
    def failures_close_batch(self) -> bool:
        return self.settings.failed_items_close_batch

    def _entry_key(self, request_id: str, group_id: str) -> str:
        return f"{self.prefix}:{request_id}:{group_id}"

    def _outputs_key(self, request_id: str, group_id: str) -> str:
        return f"{self._entry_key(request_id, group_id)}:outputs"

    def _groups_key(self, request_id: str) -> str:
        return f"{self.prefix}:{request_id}:groups"

    def register_group(self, request_id: str, group_id: str, expected: int) -> None:
        """Write the expected count once; must happen before the group's jobs are enqueued."""
        if expected < 1:
            raise ValueError("expected count must be >= 1")
        try:
            ok = self._register(
                keys=[self._entry_key(request_id, group_id), self._groups_key(request_id)],
                args=[expected, group_id],
            )
        except redis.RedisError as exc:
            raise TrackerError("Could not register group", {"request_id": request_id, "group_id": group_id}) from exc
        if not int(ok):
            raise TrackerError(
                "Group is already registered",
                {"request_id": request_id, "group_id": group_id},
            )

    def _apply(self, request_id: str, group_id: str, field: str, output_json: str = "") -> TrackerUpdate:
        try:
            accepted, completed, expected, failed = self._record(
                keys=[self._entry_key(request_id, group_id), self._outputs_key(request_id, group_id)],
                args=[field, output_json, "1" if self.failures_close_batch else "0"],
            )
        except redis.RedisError as exc:
            raise TrackerError(
                "Tracker write failed",
                {"request_id": request_id, "group_id": group_id, "field": field},
            ) from exc
        update = TrackerUpdate(
            accepted=bool(int(accepted)),
            completed=int(completed),
            expected=int(expected),
            failed=int(failed),
        )
        if not update.accepted:
            if update.expected == 0:
                logger.warning("Orphan %s event for request=%s group=%s (no tracker entry)", field, request_id, group_id)
            else:
                logger.warning(
                    "Overflow %s event for request=%s group=%s ignored (%d/%d)",
                    field,
                    request_id,
                    group_id,
                    update.completed,
                    update.expected,
                )
        return update

    def record_completion(self, request_id: str, group_id: str, output: OutputDescriptor) -> TrackerUpdate:
        """Atomically bump `completed` and append `output`."""
        update = self._apply(request_id, group_id, "completed", output.to_json())
        logger.info(
            "completed count %d jobs per group %d (request=%s group=%s)",
            update.completed,
            update.expected,
            request_id,
            group_id,
        )
        return update

    def record_failure(self, request_id: str, group_id: str) -> TrackerUpdate:
        return self._apply(request_id, group_id, "failed")

    def is_batch_complete(self, update: TrackerUpdate) -> bool:
        if not update.accepted:
            return False
        if self.failures_close_batch:
            return update.completed + update.failed == update.expected
        return update.completed == update.expected

    def outputs(self, request_id: str, group_id: str) -> List[OutputDescriptor]:
        raw = self.client.lrange(self._outputs_key(request_id, group_id), 0, -1)
        return [OutputDescriptor.from_json(item) for item in raw]

    def drain_and_clear(self, request_id: str, group_id: str) -> List[OutputDescriptor]:
        """Read every output and delete the entry in one step."""
        try:
            raw = self._drain(
                keys=[
                    self._entry_key(request_id, group_id),
                    self._outputs_key(request_id, group_id),
                    self._groups_key(request_id),
                ],
                args=[group_id],
            )
        except redis.RedisError as exc:
            raise TrackerError("Tracker drain failed", {"request_id": request_id, "group_id": group_id}) from exc
        return [OutputDescriptor.from_json(item) for item in raw]

    def get(self, request_id: str, group_id: str) -> Optional[GroupStatus]:
        entry = self.client.hgetall(self._entry_key(request_id, group_id))
        if not entry:
            return None
        return GroupStatus(
            request_id=request_id,
            group_id=group_id,
            expected=int(entry.get("expected", 0)),
            completed=int(entry.get("completed", 0)),
            failed=int(entry.get("failed", 0)),
            outputs=self.outputs(request_id, group_id),
        )

    def status(self, request_id: str) -> List[GroupStatus]:
        """Groups of `request_id` that have not been dispatched yet."""
        groups = sorted(self.client.smembers(self._groups_key(request_id)))
        result = []
        for group_id in groups:
            entry = self.get(request_id, group_id)
            if entry is not None:
                result.append(entry)
        return result
