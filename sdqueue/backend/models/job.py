"""Job records and queue query types.

A ``Job`` is owned by the job store; everything handed out to callers is a
copy. Timestamps are epoch seconds as returned by ``time.time()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional

MODEL_NAME = "model_name"
MODEL_ARCHITECTURE = "model_architecture"


class JobType(Enum):
    """Kind of generation a job performs."""

    TXT2IMG = "txt2img"
    IMG2IMG = "img2img"
    TXT2VID = "txt2vid"


class JobStatus(Enum):
    """Lifecycle state of a job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

    @classmethod
    def from_string(cls, value: str) -> Optional[JobStatus]:
        normalized = value.strip().lower()
        normalized = _STATUS_ALIASES.get(normalized, normalized)
        for status in cls:
            if status.value == normalized:
                return status
        return None


_STATUS_ALIASES = {
    "queued": "pending",
    "running": "processing",
    "canceled": "cancelled",
}


@dataclass
class ProgressInfo:
    """Raw step counters as reported by the engine."""

    step: int = 0
    total_steps: int = 0

    @property
    def fraction(self) -> float:
        if self.total_steps <= 0:
            return 0.0
        return max(0.0, min(1.0, self.step / self.total_steps))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "total_steps": self.total_steps,
            "fraction": self.fraction,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> ProgressInfo:
        return cls(
            step=int(data.get("step", 0)),
            total_steps=int(data.get("total_steps", 0)),
        )


@dataclass
class Job:
    """One generation request with its lifecycle state."""

    job_id: str
    type: JobType
    params: Dict[str, Any]
    status: JobStatus = JobStatus.PENDING
    model_settings: Dict[str, Any] = field(default_factory=dict)
    created_at: float = 0.0
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    progress: ProgressInfo = field(default_factory=ProgressInfo)
    preview: Optional[str] = None
    result: Optional[List[str]] = None
    error: Optional[str] = None
    cancel_requested: bool = False

    @property
    def prompt(self) -> str:
        value = self.params.get("prompt")
        return value if isinstance(value, str) else ""

    @property
    def negative_prompt(self) -> str:
        value = self.params.get("negative_prompt")
        return value if isinstance(value, str) else ""

    @property
    def model_name(self) -> str:
        value = self.model_settings.get(MODEL_NAME) or self.params.get("model")
        return value if isinstance(value, str) else ""

    @property
    def architecture(self) -> str:
        value = self.model_settings.get(MODEL_ARCHITECTURE) or self.params.get("architecture")
        return value if isinstance(value, str) else ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "job_id": self.job_id,
            "type": self.type.value,
            "status": self.status.value,
            "params": self.params,
            "model_settings": self.model_settings,
            "created_at": self.created_at,
            "progress": self.progress.to_dict(),
        }
        if self.started_at is not None:
            data["started_at"] = self.started_at
        if self.completed_at is not None:
            data["completed_at"] = self.completed_at
        if self.preview is not None:
            data["preview"] = self.preview
        if self.result is not None:
            data["result"] = list(self.result)
        if self.error is not None:
            data["error"] = self.error
        if self.cancel_requested:
            data["cancel_requested"] = True
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> Job:
        """Rebuild a job from its serialized form.

        Raises:
            KeyError: If ``job_id`` or ``type`` is missing.
            ValueError: If ``type`` or ``status`` is not a known value.
        """
        status = JobStatus.from_string(str(data.get("status", JobStatus.PENDING.value)))
        if status is None:
            raise ValueError(f"Unknown job status: {data.get('status')!r}")
        result = data.get("result")
        return cls(
            job_id=str(data["job_id"]),
            type=JobType(data["type"]),
            params=dict(data.get("params") or {}),
            status=status,
            model_settings=dict(data.get("model_settings") or {}),
            created_at=float(data.get("created_at", 0.0)),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            progress=ProgressInfo.from_dict(data.get("progress") or {}),
            preview=data.get("preview"),
            result=list(result) if result is not None else None,
            error=data.get("error"),
            cancel_requested=bool(data.get("cancel_requested", False)),
        )


def _contains_insensitive(haystack: str, needle: str) -> bool:
    if not needle:
        return True
    return needle.lower() in (haystack or "").lower()


@dataclass(frozen=True)
class QueueFilter:
    """Query parameters for listing and searching jobs."""

    search: Optional[str] = None
    status: Optional[JobStatus] = None
    type: Optional[JobType] = None
    architecture: Optional[str] = None
    model: Optional[str] = None
    before: Optional[float] = None
    after: Optional[float] = None
    limit: Optional[int] = None
    offset: int = 0

    def normalized(self, default_limit: int, max_limit: int) -> QueueFilter:
        """Return a copy with ``limit``/``offset`` clamped to usable values."""
        limit = default_limit if self.limit is None else self.limit
        limit = max(0, min(int(limit), max_limit))
        offset = max(0, int(self.offset or 0))
        return replace(self, limit=limit, offset=offset)

    def matches(self, job: Job) -> bool:
        if self.status is not None and job.status is not self.status:
            return False
        if self.type is not None and job.type is not self.type:
            return False
        if self.architecture and not _contains_insensitive(job.architecture, self.architecture):
            return False
        if self.model and not _contains_insensitive(job.model_name, self.model):
            return False
        if self.before is not None and job.created_at >= self.before:
            return False
        if self.after is not None and job.created_at <= self.after:
            return False
        if self.search:
            fields = (job.prompt, job.negative_prompt, job.job_id, job.model_name)
            if not any(_contains_insensitive(value, self.search) for value in fields):
                return False
        return True

    def is_empty(self) -> bool:
        return (
            self.status is None
            and self.type is None
            and not self.architecture
            and not self.model
            and not self.search
            and self.before is None
            and self.after is None
        )


@dataclass
class PaginatedResult:
    """One page of a filtered job scan."""

    items: List[Job]
    total_count: int
    filtered_count: int
    offset: int
    limit: int
    has_more: bool
    newest_timestamp: Optional[float] = None
    oldest_timestamp: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [job.to_dict() for job in self.items],
            "total_count": self.total_count,
            "filtered_count": self.filtered_count,
            "offset": self.offset,
            "limit": self.limit,
            "has_more": self.has_more,
            "newest_timestamp": self.newest_timestamp,
            "oldest_timestamp": self.oldest_timestamp,
        }


@dataclass
class JobDateGroup:
    """Jobs created on one local calendar day.

    ``count`` is the number of matching jobs on that day, which can exceed
    ``len(items)`` when the day spans several pages.
    """

    date: str
    label: str
    timestamp: float
    count: int
    items: List[Job] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "date": self.date,
            "label": self.label,
            "timestamp": self.timestamp,
            "count": self.count,
            "items": [job.to_dict() for job in self.items],
        }


@dataclass
class GroupedResult:
    """One page of a filtered job scan, grouped by creation day. Pages are 1-based."""

    groups: List[JobDateGroup]
    total_count: int
    page: int
    total_pages: int
    limit: int
    has_more: bool
    has_prev: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            "groups": [group.to_dict() for group in self.groups],
            "total_count": self.total_count,
            "page": self.page,
            "total_pages": self.total_pages,
            "limit": self.limit,
            "has_more": self.has_more,
            "has_prev": self.has_prev,
        }
