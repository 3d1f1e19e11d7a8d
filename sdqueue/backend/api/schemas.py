"""API schemas."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class JobCreateRequest(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    type: str
    params: Dict[str, Any] = Field(default_factory=dict)
    model_settings: Optional[Dict[str, Any]] = None


class JobCreateResponse(BaseModel):
    job_id: str
    status: str
    position: int


class ProgressResponse(BaseModel):
    step: int = 0
    total_steps: int = 0
    fraction: float = 0.0


class JobResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    job_id: str
    type: str
    status: str
    params: Dict[str, Any]
    model_settings: Dict[str, Any] = Field(default_factory=dict)
    created_at: float
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    progress: ProgressResponse = Field(default_factory=ProgressResponse)
    preview: Optional[str] = None
    result: Optional[List[str]] = None
    error: Optional[str] = None
    cancel_requested: bool = False


class JobListResponse(BaseModel):
    items: List[JobResponse]
    total_count: int
    filtered_count: int
    offset: int
    limit: int
    has_more: bool
    newest_timestamp: Optional[float] = None
    oldest_timestamp: Optional[float] = None


class JobDateGroupModel(BaseModel):
    date: str
    label: str
    timestamp: float
    count: int
    items: List[JobResponse]


class JobGroupedResponse(BaseModel):
    groups: List[JobDateGroupModel]
    total_count: int
    page: int
    total_pages: int
    limit: int
    has_more: bool
    has_prev: bool


class PreviewSettingsModel(BaseModel):
    mode: str = "tae"
    interval: int = 1
    max_size: int = 256
    quality: int = 75


class ModelLoadBody(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    model_name: str
    architecture: Optional[str] = None
    # Component selections keyed like job model_settings, e.g. "vae_model"
    components: Dict[str, str] = Field(default_factory=dict)
    options: Dict[str, Any] = Field(default_factory=dict)


class ScanResponse(BaseModel):
    count: int
    scanned_at: Optional[float] = None
