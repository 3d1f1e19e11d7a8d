"""Data models shared by the queue, registry and API layers."""

from __future__ import annotations

from sdqueue.backend.models.event import Event, EventKind
from sdqueue.backend.models.job import (
    GroupedResult,
    Job,
    JobDateGroup,
    JobStatus,
    JobType,
    PaginatedResult,
    ProgressInfo,
    QueueFilter,
)
from sdqueue.backend.models.model_descriptor import ModelCategory, ModelDescriptor, ModelFilter
from sdqueue.backend.models.preview import PreviewFrame, PreviewMode, PreviewSettings

__all__ = [
    "Event",
    "EventKind",
    "GroupedResult",
    "Job",
    "JobDateGroup",
    "JobStatus",
    "JobType",
    "ModelCategory",
    "ModelDescriptor",
    "ModelFilter",
    "PaginatedResult",
    "PreviewFrame",
    "PreviewMode",
    "PreviewSettings",
    "ProgressInfo",
    "QueueFilter",
]
