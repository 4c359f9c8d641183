"""
Plain data carriers shared by the queue, the tracker and the webhook layer.

Everything that crosses Redis is serialized as JSON through `to_json` /
`from_json` so worker processes never depend on pickling.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
import json
from typing import List, Optional


@dataclass
class Job:
    url: str
    request_id: str
    group_id: str
    item_id: Optional[str] = None
    job_id: Optional[str] = None
    attempts: int = 0

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "Job":
        return cls(**json.loads(raw))


@dataclass
class OutputDescriptor:
    request_id: str
    group_id: str
    output_location: str
    item_id: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "OutputDescriptor":
        return cls(**json.loads(raw))


@dataclass(frozen=True)
class TrackerUpdate:
    """Result of one atomic tracker write."""

    accepted: bool
    completed: int
    expected: int
    failed: int = 0


@dataclass
class GroupStatus:
    request_id: str
    group_id: str
    expected: int
    completed: int
    failed: int
    outputs: List[OutputDescriptor] = field(default_factory=list)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["outputs"] = [o.output_location for o in self.outputs]
        return data


@dataclass
class WebhookNotification:
    request_id: str
    group_id: str
    output_urls: List[str]
    attempts: int = 0

    def payload(self) -> dict:
        """JSON body sent to the notification consumer."""
        return {
            "request_id": self.request_id,
            "product_oid": self.group_id,
            "output_urls": list(self.output_urls),
        }

    def to_json(self) -> str:
        return json.dumps(asdict(self), sort_keys=True)

    @classmethod
    def from_json(cls, raw: str | bytes) -> "WebhookNotification":
        return cls(**json.loads(raw))
