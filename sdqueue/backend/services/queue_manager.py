"""Single-worker job scheduler.

Jobs are served strictly FIFO by one daemon worker thread. The worker is the
only writer of status, progress, preview, result and error; API callers
only submit, read, cancel and delete.
"""

from __future__ import annotations

import copy
import json
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from sdqueue.backend.config import (
    DEFAULT_GROUPED_LIMIT,
    DEFAULT_QUEUE_LIMIT,
    INTERRUPTED_JOB_POLICY,
    MAX_QUEUE_LIMIT,
    OUTPUT_DIR,
    PREVIEW_THROTTLE_MS,
    PROGRESS_THROTTLE_MS,
)
from sdqueue.backend.models.event import EventKind
from sdqueue.backend.models.job import (
    MODEL_ARCHITECTURE,
    MODEL_NAME,
    GroupedResult,
    Job,
    JobStatus,
    JobType,
    PaginatedResult,
    ProgressInfo,
    QueueFilter,
)
from sdqueue.backend.models.preview import PreviewFrame, PreviewMode, PreviewSettings
from sdqueue.backend.services.error_capture import ErrorCaptureBridge
from sdqueue.backend.services.event_broadcaster import EventBroadcaster
from sdqueue.backend.services.model_guard import LoadedModelGuard, components_from_settings
from sdqueue.backend.store.job_store import JobStore
from sdqueue.backend.utils.exceptions import (
    InvalidRequest,
    JobCancelledError,
    build_error_message,
    parse_job_status,
    parse_job_type,
    validate_job_params,
)
from sdqueue.backend.utils.logging_utils import JobLogger, logger

MIN_PREVIEW_SIZE = 16
CONFIG_FILE_NAME = "config.json"


def _parse_int(name: str, value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{name} must be an integer, got {value!r}") from None


def _parse_float(name: str, value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidRequest(f"{name} must be a number, got {value!r}") from None


def build_queue_filter(query: Union[QueueFilter, Mapping[str, Any], None]) -> QueueFilter:
    """Convert loosely typed query parameters into a ``QueueFilter``.

    Raises:
        InvalidRequest: If a status, type or numeric bound cannot be parsed.
    """
    if query is None:
        return QueueFilter()
    if isinstance(query, QueueFilter):
        return query

    status = query.get("status")
    job_type = query.get("type")
    return QueueFilter(
        search=query.get("search") or None,
        status=parse_job_status(status) if status else None,
        type=parse_job_type(job_type) if job_type else None,
        architecture=query.get("architecture") or None,
        model=query.get("model") or None,
        before=_parse_float("before", query.get("before")),
        after=_parse_float("after", query.get("after")),
        limit=_parse_int("limit", query.get("limit")),
        offset=_parse_int("offset", query.get("offset")) or 0,
    )


def _parse_preview_mode(mode: Union[str, PreviewMode]) -> PreviewMode:
    if isinstance(mode, PreviewMode):
        return mode
    try:
        return PreviewMode(str(mode).strip().lower())
    except ValueError:
        allowed = ", ".join(m.value for m in PreviewMode)
        raise InvalidRequest(f"Unknown preview mode {mode!r} (expected one of: {allowed})") from None


class QueueManager:
    """Owns job lifecycle and drives the engine through the model guard."""

    def __init__(
        self,
        model_guard: LoadedModelGuard,
        store: JobStore,
        broadcaster: EventBroadcaster,
        error_capture: ErrorCaptureBridge,
        output_dir: Path = OUTPUT_DIR,
        preview_settings: Optional[PreviewSettings] = None,
        interrupted_policy: str = INTERRUPTED_JOB_POLICY,
        progress_throttle_ms: int = PROGRESS_THROTTLE_MS,
        preview_throttle_ms: int = PREVIEW_THROTTLE_MS,
    ) -> None:
        self.model_guard = model_guard
        self.store = store
        self.broadcaster = broadcaster
        self.error_capture = error_capture
        self.output_dir = Path(output_dir)
        self.progress_throttle = progress_throttle_ms / 1000.0
        self.preview_throttle = preview_throttle_ms / 1000.0

        self._cond = threading.Condition()
        self._stop_requested = threading.Event()
        self._worker: Optional[threading.Thread] = None

        self._state_lock = threading.Lock()
        self._current_job_id: Optional[str] = None
        self._current_cancel: Optional[threading.Event] = None
        self._preview_settings = preview_settings or PreviewSettings()
        self._previews: Dict[str, PreviewFrame] = {}

        self.store.load(interrupted_policy)
        self.store.flush()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def is_running(self) -> bool:
        worker = self._worker
        return worker is not None and worker.is_alive()

    def start(self) -> None:
        """Spawn the worker thread. Calling it while running is a no-op."""
        with self._cond:
            if self.is_running:
                return
            self._stop_requested.clear()
            self.error_capture.attach(self.model_guard.engine.logger_name)
            self._worker = threading.Thread(target=self._worker_loop, daemon=True, name="queue-worker")
            self._worker.start()
        logger.info("Queue worker started (%d pending)", self.store.pending_count())

    def stop(self) -> None:
        """Let the current job finish, then stop the worker and wait for it.

        Pending jobs stay pending in the recovery file.
        """
        with self._cond:
            self._stop_requested.set()
            self._cond.notify_all()
        worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join()
        self.error_capture.detach(self.model_guard.engine.logger_name)
        self.store.flush()
        logger.info("Queue worker stopped (%d pending)", self.store.pending_count())

    def abort(self) -> None:
        """Second-stage shutdown: request cancellation of the running job and return."""
        with self._cond:
            self._stop_requested.set()
            self._cond.notify_all()
        with self._state_lock:
            job_id, cancel = self._current_job_id, self._current_cancel
        if cancel is not None:
            cancel.set()
            logger.warning("Abort requested, cancelling running job %s", job_id)
        self.store.flush()

    # ------------------------------------------------------------------
    # Admission and queries
    # ------------------------------------------------------------------
    def submit(
        self,
        job_type: Union[str, JobType],
        params: Dict[str, Any],
        model_settings: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Append a job to the queue and return its id without waiting.

        Raises:
            InvalidRequest: If the type is unknown or the params are empty.
        """
        parsed_type = parse_job_type(job_type)
        validate_job_params(parsed_type, params)
        if model_settings is not None and not isinstance(model_settings, dict):
            raise InvalidRequest("model_settings must be an object")

        job = Job(
            job_id=uuid.uuid4().hex,
            type=parsed_type,
            params=copy.deepcopy(params),
            model_settings=copy.deepcopy(model_settings or {}),
            created_at=time.time(),
        )
        self.store.insert(job)
        self.store.persist(force=True)
        position = self.store.pending_count()
        JobLogger(job.job_id).info("submitted | type=%s | position=%d", parsed_type.value, position)
        self._emit(EventKind.JOB_ADDED, job_id=job.job_id, position=position, job=job.to_dict())

        with self._cond:
            self._cond.notify_all()
        return job.job_id

    def get_job(self, job_id: str) -> Optional[Job]:
        return self.store.get(job_id)

    def list_jobs(self, limit: Optional[int] = None, offset: int = 0) -> PaginatedResult:
        return self.search_jobs(QueueFilter(limit=limit, offset=offset))

    def search_jobs(self, query: Union[QueueFilter, Mapping[str, Any], None] = None) -> PaginatedResult:
        return self.store.scan(build_queue_filter(query), DEFAULT_QUEUE_LIMIT, MAX_QUEUE_LIMIT)

    def list_jobs_grouped(
        self,
        query: Union[QueueFilter, Mapping[str, Any], None] = None,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> GroupedResult:
        """Filtered history grouped by creation day ("Today", "Yesterday", "Dec 21, 2025")."""
        return self.store.scan_grouped(
            build_queue_filter(query),
            page=page,
            limit=DEFAULT_GROUPED_LIMIT if limit is None else limit,
            max_limit=MAX_QUEUE_LIMIT,
        )

    def get_current_progress(self) -> Optional[Dict[str, Any]]:
        with self._state_lock:
            job_id = self._current_job_id
        if job_id is None:
            return None
        job = self.store.get(job_id)
        if job is None:
            return None
        return {
            "job_id": job.job_id,
            "type": job.type.value,
            "step": job.progress.step,
            "total_steps": job.progress.total_steps,
            "progress": job.progress.fraction,
            "started_at": job.started_at,
            "cancel_requested": job.cancel_requested,
        }

    def get_status(self) -> Dict[str, Any]:
        counts = self.store.counts()
        return {
            "pending": counts[JobStatus.PENDING],
            "processing": counts[JobStatus.PROCESSING],
            "completed": counts[JobStatus.COMPLETED],
            "failed": counts[JobStatus.FAILED],
            "cancelled": counts[JobStatus.CANCELLED],
            "total": sum(counts.values()),
            "current_job": self.get_current_progress(),
            "worker_running": self.is_running,
            "model": self.model_guard.info(),
            "preview_settings": self.get_preview_settings().to_dict(),
            "subscribers": self.broadcaster.subscriber_count,
        }

    # ------------------------------------------------------------------
    # Cancellation and history
    # ------------------------------------------------------------------
    def cancel_job(self, job_id: str) -> bool:
        """Cancel a pending job now, or flag a running one for the next checkpoint.

        Returns False for unknown or already finished jobs.
        """
        outcome: Dict[str, JobStatus] = {}

        def _cancel(job: Job) -> None:
            if job.status is JobStatus.PENDING:
                job.status = JobStatus.CANCELLED
                job.completed_at = time.time()
                outcome["from"] = JobStatus.PENDING
            elif job.status is JobStatus.PROCESSING:
                job.cancel_requested = True
                outcome["from"] = JobStatus.PROCESSING

        snapshot = self.store.update(job_id, _cancel)
        if snapshot is None or "from" not in outcome:
            return False

        log = JobLogger(job_id)
        if outcome["from"] is JobStatus.PENDING:
            self.store.persist(force=True)
            log.info("pending -> cancelled")
            self._emit_terminal(snapshot, JobStatus.PENDING)
            return True

        with self._state_lock:
            cancel = self._current_cancel if self._current_job_id == job_id else None
        if cancel is not None:
            cancel.set()
        self.store.persist()
        if self.model_guard.engine.supports_interruption:
            log.info("cancel requested while processing")
        else:
            log.info("cancel requested; engine cannot interrupt, honoured after generation")
        self._emit(
            EventKind.JOB_STATUS_CHANGED,
            job_id=job_id,
            status=snapshot.status.value,
            cancel_requested=True,
        )
        return True

    def delete_job(self, job_id: str) -> bool:
        """Remove a job that is not currently processing."""
        removed = self.store.remove(job_id, predicate=lambda job: job.status is not JobStatus.PROCESSING)
        if removed is None:
            return False
        self._drop_preview(job_id)
        self.store.persist(force=True)
        JobLogger(job_id).info("deleted (%s)", removed.status.value)
        self._emit(EventKind.JOB_DELETED, job_id=job_id)
        return True

    def clear_completed(self) -> int:
        """Remove every finished job and return how many were removed."""
        removed = self.store.remove_where(lambda job: job.status.is_terminal)
        if not removed:
            return 0
        for job_id in removed:
            self._drop_preview(job_id)
            self._emit(EventKind.JOB_DELETED, job_id=job_id)
        self.store.persist(force=True)
        logger.info("Cleared %d finished jobs", len(removed))
        return len(removed)

    # ------------------------------------------------------------------
    # Previews
    # ------------------------------------------------------------------
    def get_preview_settings(self) -> PreviewSettings:
        with self._state_lock:
            return self._preview_settings

    def set_preview_settings(
        self,
        mode: Union[str, PreviewMode],
        interval: int = 1,
        max_size: int = 256,
        quality: int = 75,
    ) -> PreviewSettings:
        """Replace the process-wide preview configuration.

        Raises:
            InvalidRequest: On an unknown mode or out-of-range values.
        """
        parsed_mode = _parse_preview_mode(mode)
        interval = _parse_int("interval", interval)
        max_size = _parse_int("max_size", max_size)
        quality = _parse_int("quality", quality)
        if interval is None or interval < 1:
            raise InvalidRequest("interval must be >= 1")
        if max_size is None or max_size < MIN_PREVIEW_SIZE:
            raise InvalidRequest(f"max_size must be >= {MIN_PREVIEW_SIZE}")
        if quality is None or not 1 <= quality <= 100:
            raise InvalidRequest("quality must be between 1 and 100")

        settings = PreviewSettings(mode=parsed_mode, interval=interval, max_size=max_size, quality=quality)
        with self._state_lock:
            self._preview_settings = settings
        logger.info(
            "Preview settings: mode=%s interval=%d max_size=%d quality=%d",
            settings.mode.value,
            settings.interval,
            settings.max_size,
            settings.quality,
        )
        return settings

    def get_preview(self, job_id: str) -> Optional[PreviewFrame]:
        with self._state_lock:
            return self._previews.get(job_id)

    def _drop_preview(self, job_id: str) -> None:
        with self._state_lock:
            self._previews.pop(job_id, None)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------
    def _worker_loop(self) -> None:
        while True:
            with self._cond:
                while not self._stop_requested.is_set() and not self.store.has_pending():
                    self._cond.wait()
                if self._stop_requested.is_set():
                    return
            job = self.store.claim_next()
            if job is None:
                continue
            try:
                self._process_job(job)
            except Exception as exc:
                logger.exception("Unexpected error while processing job %s", job.job_id)
                self._finish(job, JobStatus.FAILED, error=str(exc) or type(exc).__name__)

    def _process_job(self, job: Job) -> None:
        log = JobLogger(job.job_id)
        cancel = threading.Event()
        with self._state_lock:
            self._current_job_id = job.job_id
            self._current_cancel = cancel
        # A cancel request may have landed between claim and registration
        latest = self.store.get(job.job_id)
        if latest is not None and latest.cancel_requested:
            cancel.set()

        log.info(
            "pending -> processing | type=%s | remaining=%d",
            job.type.value,
            self.store.pending_count(),
        )
        self._emit(EventKind.JOB_STATUS_CHANGED, job_id=job.job_id, status=JobStatus.PROCESSING.value)
        self.store.persist()

        status = JobStatus.FAILED
        result: Optional[List[str]] = None
        error: Optional[str] = None
        captured: Optional[str] = None
        try:
            self.error_capture.begin_window(job.job_id)
            try:
                result = self._execute(job, cancel)
                status = JobStatus.COMPLETED
            finally:
                captured = self.error_capture.end_window()
        except JobCancelledError:
            status = JobStatus.CANCELLED
        except Exception as exc:
            error = build_error_message(str(exc) or type(exc).__name__, captured)
            log.error("generation failed: %s", error)
        finally:
            with self._state_lock:
                self._current_job_id = None
                self._current_cancel = None

        self._finish(job, status, result=result, error=error)

    def _execute(self, job: Job, cancel: threading.Event) -> List[str]:
        if cancel.is_set():
            raise JobCancelledError("Cancelled before start")

        model_name = job.model_name or None
        components = components_from_settings(job.model_settings)
        output_dir = self.output_dir / job.job_id
        preview_settings = self.get_preview_settings()

        with self.model_guard.ensure_loaded(model_name, job.architecture, components) as token:
            resolved = {MODEL_NAME: token.model.name, MODEL_ARCHITECTURE: token.model.architecture}
            self.store.update(job.job_id, lambda j: j.model_settings.update(resolved))

            upscaler = job.params.get("upscaler")
            if isinstance(upscaler, str) and upscaler:
                token.ensure_upscaler(upscaler)

            if cancel.is_set():
                raise JobCancelledError("Cancelled before generation")
            output_dir.mkdir(parents=True, exist_ok=True)
            paths = token.run(
                job.type,
                job.params,
                output_dir,
                progress_callback=self._progress_reporter(job.job_id),
                preview_callback=self._preview_reporter(job.job_id),
                preview_settings=preview_settings,
                stop_flag=cancel,
            )

        # Engines without interruption support finish the run; honour the request here
        if cancel.is_set():
            raise JobCancelledError("Cancelled after generation")

        model_settings = dict(job.model_settings)
        model_settings.update(resolved)
        self._write_job_config(job, model_settings, output_dir)
        return [self._relative_artifact(path) for path in paths]

    def _progress_reporter(self, job_id: str):
        last_emit = [float("-inf")]

        def _set(job: Job, step: int, total: int) -> None:
            job.progress = ProgressInfo(step=step, total_steps=total)

        def on_progress(step: int, total_steps: int) -> None:
            snapshot = self.store.update(job_id, lambda j: _set(j, step, total_steps))
            self.store.persist()
            now = time.monotonic()
            if snapshot is None:
                return
            if step < total_steps and now - last_emit[0] < self.progress_throttle:
                return
            last_emit[0] = now
            self._emit(
                EventKind.JOB_PROGRESS,
                job_id=job_id,
                step=step,
                total_steps=total_steps,
                progress=snapshot.progress.fraction,
            )

        return on_progress

    def _preview_reporter(self, job_id: str):
        last_emit = [float("-inf")]
        preview_url = f"/api/jobs/{job_id}/preview"

        def _set(job: Job) -> None:
            job.preview = preview_url

        def on_preview(step: int, data: bytes, width: int, height: int, frame_count: int = 1, is_noisy: bool = False) -> None:
            settings = self.get_preview_settings()
            if not settings.enabled or step % settings.interval != 0:
                return
            now = time.monotonic()
            if now - last_emit[0] < self.preview_throttle:
                return
            last_emit[0] = now

            frame = PreviewFrame(
                job_id=job_id,
                step=step,
                data=data,
                width=width,
                height=height,
                frame_count=frame_count,
                is_noisy=is_noisy,
            )
            with self._state_lock:
                self._previews[job_id] = frame
            self.store.update(job_id, _set)
            self._emit(EventKind.JOB_PREVIEW, **frame.to_event_data())

        return on_preview

    def _relative_artifact(self, path: Path) -> str:
        path = Path(path)
        try:
            return path.resolve().relative_to(self.output_dir.resolve()).as_posix()
        except ValueError:
            return str(path)

    def _write_job_config(self, job: Job, model_settings: Dict[str, Any], output_dir: Path) -> None:
        config = {
            "job_id": job.job_id,
            "type": job.type.value,
            "params": job.params,
            "model_settings": model_settings,
            "created_at": job.created_at,
        }
        try:
            with open(output_dir / CONFIG_FILE_NAME, "w", encoding="utf-8") as f:
                json.dump(config, f, indent=2, default=str)
        except (OSError, TypeError, ValueError) as exc:
            JobLogger(job.job_id).warning("failed to write %s: %s", CONFIG_FILE_NAME, exc)

    def _finish(
        self,
        job: Job,
        status: JobStatus,
        result: Optional[List[str]] = None,
        error: Optional[str] = None,
    ) -> None:
        def _apply(j: Job) -> None:
            if j.status.is_terminal:
                return
            j.status = status
            j.completed_at = time.time()
            if status is JobStatus.COMPLETED:
                j.result = list(result or [])
                j.error = None
                if j.progress.total_steps:
                    j.progress.step = j.progress.total_steps
            else:
                j.result = None
                j.error = error

        snapshot = self.store.update(job.job_id, _apply)
        self._drop_preview(job.job_id)
        self.store.persist(force=True)
        if snapshot is None:
            return

        duration = (snapshot.completed_at or time.time()) - (snapshot.started_at or snapshot.created_at)
        JobLogger(job.job_id).info(
            "processing -> %s | duration=%.1fs | remaining=%d",
            snapshot.status.value,
            duration,
            self.store.pending_count(),
        )
        self._emit_terminal(snapshot, JobStatus.PROCESSING)

    def _emit_terminal(self, job: Job, previous: JobStatus) -> None:
        self._emit(
            EventKind.JOB_STATUS_CHANGED,
            job_id=job.job_id,
            status=job.status.value,
            previous_status=previous.value,
        )
        self._emit(
            EventKind.JOB_FINISHED,
            job_id=job.job_id,
            status=job.status.value,
            result=job.result,
            error=job.error,
        )

    def _emit(self, kind: EventKind, **data) -> None:
        self.broadcaster.emit(kind, **data)
