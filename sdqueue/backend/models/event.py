"""Events fanned out to live subscribers."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class EventKind(Enum):
    """Type of a broadcast event."""

    JOB_ADDED = "job_added"
    JOB_STATUS_CHANGED = "job_status_changed"
    JOB_PROGRESS = "job_progress"
    JOB_PREVIEW = "job_preview"
    JOB_FINISHED = "job_finished"
    JOB_DELETED = "job_deleted"
    MODEL_LOADED = "model_loaded"
    MODEL_UNLOADED = "model_unloaded"
    MODEL_LOAD_FAILED = "model_load_failed"


@dataclass(frozen=True)
class Event:
    kind: EventKind
    data: Dict[str, Any]
    timestamp: float = field(default_factory=time.time)

    @property
    def job_id(self) -> Optional[str]:
        return self.data.get("job_id")

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "data": self.data, "timestamp": self.timestamp}

    def to_sse(self) -> str:
        return f"event: {self.kind.value}\ndata: {json.dumps(self.to_dict())}\n\n"
