"""Custom exceptions and validation helpers."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from sdqueue.backend.models.job import JobStatus, JobType


class InvalidRequest(Exception):
    """Malformed submission, rejected before it reaches the queue."""


@dataclass(eq=False)
class ModelLoadError(Exception):
    """Raised when the engine refuses to load or unload a model."""

    message: str
    model_name: str = ""
    architecture: str = ""

    def __str__(self) -> str:
        return self.message


class EngineExecutionError(Exception):
    """Generation failed inside the inference engine."""


class JobCancelledError(Exception):
    """Raised by an engine at a step checkpoint once cancellation is requested."""


class PersistenceWarning(Exception):
    """Recovery file could not be read or written; the queue keeps running in memory."""


def build_error_message(base_message: str, captured: Optional[str]) -> str:
    if not captured:
        return base_message
    if not base_message:
        return captured
    return f"{base_message}: {captured}"


def parse_job_type(value: Any) -> JobType:
    if isinstance(value, JobType):
        return value
    try:
        return JobType(str(value).strip().lower())
    except ValueError:
        allowed = ", ".join(t.value for t in JobType)
        raise InvalidRequest(f"Unknown job type {value!r} (expected one of: {allowed})") from None


def parse_job_status(value: Any) -> JobStatus:
    if isinstance(value, JobStatus):
        return value
    status = JobStatus.from_string(str(value))
    if status is None:
        allowed = ", ".join(s.value for s in JobStatus)
        raise InvalidRequest(f"Unknown job status {value!r} (expected one of: {allowed})")
    return status


def validate_job_params(job_type: JobType, params: Any) -> Dict[str, Any]:
    if not isinstance(params, dict) or not params:
        raise InvalidRequest("Job params must be a non-empty object")
    if job_type is JobType.IMG2IMG and not params.get("init_image"):
        raise InvalidRequest("img2img jobs require an init_image")
    return params
