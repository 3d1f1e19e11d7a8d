"""FastAPI routes with SSE event streaming."""

from __future__ import annotations

import asyncio
import json
import threading
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import Response, StreamingResponse

from sdqueue.backend.api.schemas import (
    JobCreateRequest,
    JobCreateResponse,
    JobGroupedResponse,
    JobListResponse,
    JobResponse,
    ModelLoadBody,
    PreviewSettingsModel,
    ScanResponse,
)
from sdqueue.backend.config import SSE_IDLE_TIMEOUT_SECONDS
from sdqueue.backend.models.job import Job, PaginatedResult
from sdqueue.backend.models.model_descriptor import ModelCategory, ModelFilter
from sdqueue.backend.services.container import Services, build_services
from sdqueue.backend.services.model_guard import components_from_settings
from sdqueue.backend.utils.exceptions import InvalidRequest, ModelLoadError

router = APIRouter()

_services: Optional[Services] = None
_services_lock = threading.Lock()


def get_services() -> Services:
    """Return the process-wide services, building them on first use."""
    global _services
    with _services_lock:
        if _services is None:
            _services = build_services()
        return _services


def _job_response(job: Job) -> JobResponse:
    return JobResponse(**job.to_dict())


def _page_response(page: PaginatedResult) -> JobListResponse:
    data = page.to_dict()
    data["items"] = [_job_response(job) for job in page.items]
    return JobListResponse(**data)


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


# ----------------------------------------------------------------------
# Jobs
# ----------------------------------------------------------------------
@router.post("/jobs", response_model=JobCreateResponse)
def create_job(body: JobCreateRequest, services: Services = Depends(get_services)) -> JobCreateResponse:
    try:
        job_id = services.queue_manager.submit(body.type, body.params, body.model_settings)
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    job = services.queue_manager.get_job(job_id)
    return JobCreateResponse(
        job_id=job_id,
        status=job.status.value if job else "pending",
        position=services.store.pending_count(),
    )


@router.get("/jobs", response_model=JobListResponse)
def list_jobs(
    search: Optional[str] = None,
    status: Optional[str] = None,
    type: Optional[str] = None,
    architecture: Optional[str] = None,
    model: Optional[str] = None,
    before: Optional[float] = None,
    after: Optional[float] = None,
    limit: Optional[int] = None,
    offset: int = 0,
    services: Services = Depends(get_services),
) -> JobListResponse:
    query = {
        "search": search,
        "status": status,
        "type": type,
        "architecture": architecture,
        "model": model,
        "before": before,
        "after": after,
        "limit": limit,
        "offset": offset,
    }
    try:
        page = services.queue_manager.search_jobs(query)
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return _page_response(page)


@router.get("/jobs/grouped", response_model=JobGroupedResponse)
def list_jobs_grouped(
    search: Optional[str] = None,
    status: Optional[str] = None,
    type: Optional[str] = None,
    architecture: Optional[str] = None,
    model: Optional[str] = None,
    before: Optional[float] = None,
    after: Optional[float] = None,
    page: int = 1,
    limit: Optional[int] = None,
    services: Services = Depends(get_services),
) -> JobGroupedResponse:
    query = {
        "search": search,
        "status": status,
        "type": type,
        "architecture": architecture,
        "model": model,
        "before": before,
        "after": after,
    }
    try:
        grouped = services.queue_manager.list_jobs_grouped(query, page=page, limit=limit)
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JobGroupedResponse(**grouped.to_dict())


@router.post("/jobs/clear")
def clear_jobs(services: Services = Depends(get_services)) -> dict:
    return {"removed": services.queue_manager.clear_completed()}


@router.get("/jobs/{job_id}", response_model=JobResponse)
def job_status(job_id: str, services: Services = Depends(get_services)) -> JobResponse:
    job = services.queue_manager.get_job(job_id)
    if not job:
        raise HTTPException(status_code=404, detail="Job not found")
    return _job_response(job)


@router.post("/jobs/{job_id}/cancel")
def cancel_job(job_id: str, services: Services = Depends(get_services)) -> dict:
    if not services.queue_manager.cancel_job(job_id):
        raise HTTPException(status_code=404, detail="Job not found or already finished")
    job = services.queue_manager.get_job(job_id)
    return {"job_id": job_id, "status": job.status.value if job else "cancelled"}


@router.delete("/jobs/{job_id}")
def delete_job(job_id: str, services: Services = Depends(get_services)) -> dict:
    if services.queue_manager.get_job(job_id) is None:
        raise HTTPException(status_code=404, detail="Job not found")
    if not services.queue_manager.delete_job(job_id):
        raise HTTPException(status_code=409, detail="Job is processing; cancel it first")
    return {"job_id": job_id, "deleted": True}


@router.get("/jobs/{job_id}/preview")
def job_preview(job_id: str, services: Services = Depends(get_services)) -> Response:
    frame = services.queue_manager.get_preview(job_id)
    if frame is None:
        raise HTTPException(status_code=404, detail="No preview available")
    return Response(
        content=frame.data,
        media_type=frame.content_type,
        headers={"X-Preview-Step": str(frame.step), "Cache-Control": "no-store"},
    )


@router.get("/queue/status")
def queue_status(services: Services = Depends(get_services)) -> dict:
    return services.queue_manager.get_status()


# ----------------------------------------------------------------------
# Models
# ----------------------------------------------------------------------
@router.get("/models")
def models(
    type: Optional[str] = None,
    extension: Optional[str] = None,
    search: Optional[str] = None,
    services: Services = Depends(get_services),
) -> dict:
    category = None
    if type:
        try:
            category = ModelCategory(type.strip().lower())
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Unknown model type: {type}") from None
    loaded = services.model_guard.loaded_model
    return services.registry.to_api_response(
        ModelFilter(category=category, extension=extension, search=search),
        loaded=(loaded.name, loaded.category) if loaded else None,
    )


@router.post("/models/scan", response_model=ScanResponse)
def scan_models(services: Services = Depends(get_services)) -> ScanResponse:
    count = services.registry.scan()
    return ScanResponse(count=count, scanned_at=services.registry.last_scan)


@router.post("/models/load")
def load_model(body: ModelLoadBody, services: Services = Depends(get_services)) -> dict:
    """Preload a model. Waits for the running job, if any, to release the engine."""
    try:
        info = services.model_guard.load(
            body.model_name,
            body.architecture or "",
            components_from_settings(body.components),
            body.options,
        )
    except ModelLoadError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"loaded": True, **info.to_dict()}


@router.post("/models/unload")
def unload_model(services: Services = Depends(get_services)) -> dict:
    try:
        services.model_guard.unload()
    except ModelLoadError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    return {"loaded": False}


# ----------------------------------------------------------------------
# Preview settings
# ----------------------------------------------------------------------
@router.get("/preview-settings", response_model=PreviewSettingsModel)
def get_preview_settings(services: Services = Depends(get_services)) -> PreviewSettingsModel:
    return PreviewSettingsModel(**services.queue_manager.get_preview_settings().to_dict())


@router.put("/preview-settings", response_model=PreviewSettingsModel)
def put_preview_settings(
    body: PreviewSettingsModel, services: Services = Depends(get_services)
) -> PreviewSettingsModel:
    try:
        settings = services.queue_manager.set_preview_settings(
            body.mode, body.interval, body.max_size, body.quality
        )
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return PreviewSettingsModel(**settings.to_dict())


# ----------------------------------------------------------------------
# Events
# ----------------------------------------------------------------------
@router.get("/events")
async def stream_events(
    request: Request,
    job_id: Optional[str] = None,
    services: Services = Depends(get_services),
):
    """Stream queue and model events with client disconnect detection and idle timeout."""
    snapshot = services.queue_manager.get_status()

    async def event_stream():
        idle_count = 0
        # Calculate max idle iterations (0.5s per iteration)
        max_idle = SSE_IDLE_TIMEOUT_SECONDS * 2
        # Subscribed on first iteration so a stream that never starts holds no mailbox
        subscription = services.broadcaster.subscribe(job_id=job_id)
        try:
            yield f"event: queue_status\ndata: {json.dumps(snapshot, default=str)}\n\n"
            while True:
                # Check if client disconnected
                if await request.is_disconnected():
                    break

                events = subscription.drain()
                if events:
                    idle_count = 0
                    for event in events:
                        yield event.to_sse()
                else:
                    idle_count += 1
                    # Terminate if idle for too long
                    if idle_count > max_idle:
                        yield f": SSE timeout after {SSE_IDLE_TIMEOUT_SECONDS}s idle\n\n"
                        break

                await asyncio.sleep(0.5)
        finally:
            subscription.close()

    return StreamingResponse(event_stream(), media_type="text/event-stream")
