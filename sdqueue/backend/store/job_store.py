"""Ordered, lock-guarded job store persisted to a JSON recovery file."""

from __future__ import annotations

import copy
import json
import os
import threading
import time
from collections import OrderedDict
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Callable, Dict, List, Optional

from sdqueue.backend.config import (
    DEFAULT_GROUPED_LIMIT,
    DEFAULT_QUEUE_LIMIT,
    INTERRUPTED_JOB_ERROR,
    MAX_QUEUE_LIMIT,
    PERSIST_MIN_INTERVAL_SECONDS,
)
from sdqueue.backend.models.job import (
    GroupedResult,
    Job,
    JobDateGroup,
    JobStatus,
    PaginatedResult,
    QueueFilter,
)
from sdqueue.backend.utils.exceptions import PersistenceWarning
from sdqueue.backend.utils.logging_utils import logger

STATE_VERSION = 1


class JobStore:
    """Insertion-ordered job collection.

    Every read returns deep copies so callers can never mutate stored
    records. Insertion order is submission order.
    """

    def __init__(
        self,
        state_file: Optional[Path] = None,
        persist_interval: float = PERSIST_MIN_INTERVAL_SECONDS,
    ) -> None:
        self.state_file = Path(state_file) if state_file is not None else None
        self.persist_interval = persist_interval
        self._lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._jobs: OrderedDict[str, Job] = OrderedDict()
        self._dirty = False
        self._last_persist = float("-inf")

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    def __contains__(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._jobs

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------
    def insert(self, job: Job) -> None:
        with self._lock:
            if job.job_id in self._jobs:
                raise ValueError(f"Duplicate job id: {job.job_id}")
            self._jobs[job.job_id] = copy.deepcopy(job)

    def update(self, job_id: str, mutate: Callable[[Job], None]) -> Optional[Job]:
        """Apply ``mutate`` to the stored job under the store lock.

        Returns a snapshot of the updated job, or None if it does not exist.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            mutate(job)
            return copy.deepcopy(job)

    def claim_next(self) -> Optional[Job]:
        """Atomically move the oldest pending job to processing."""
        with self._lock:
            for job in self._jobs.values():
                if job.status is JobStatus.PENDING:
                    job.status = JobStatus.PROCESSING
                    job.started_at = time.time()
                    return copy.deepcopy(job)
        return None

    def remove(self, job_id: str, predicate: Optional[Callable[[Job], bool]] = None) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or (predicate is not None and not predicate(job)):
                return None
            return self._jobs.pop(job_id)

    def remove_where(self, predicate: Callable[[Job], bool]) -> List[str]:
        with self._lock:
            doomed = [job_id for job_id, job in self._jobs.items() if predicate(job)]
            for job_id in doomed:
                del self._jobs[job_id]
        return doomed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def get(self, job_id: str) -> Optional[Job]:
        with self._lock:
            job = self._jobs.get(job_id)
            return copy.deepcopy(job) if job is not None else None

    def has_pending(self) -> bool:
        with self._lock:
            return any(job.status is JobStatus.PENDING for job in self._jobs.values())

    def pending_count(self) -> int:
        with self._lock:
            return sum(1 for job in self._jobs.values() if job.status is JobStatus.PENDING)

    def all(self) -> List[Job]:
        with self._lock:
            return [copy.deepcopy(job) for job in self._jobs.values()]

    def counts(self) -> Dict[JobStatus, int]:
        counts = {status: 0 for status in JobStatus}
        with self._lock:
            for job in self._jobs.values():
                counts[job.status] += 1
        return counts

    def scan(
        self,
        query: QueueFilter,
        default_limit: int = DEFAULT_QUEUE_LIMIT,
        max_limit: int = MAX_QUEUE_LIMIT,
    ) -> PaginatedResult:
        """Filter, order newest first and paginate."""
        query = query.normalized(default_limit, max_limit)
        with self._lock:
            total = len(self._jobs)
            matching = [job for job in reversed(self._jobs.values()) if query.matches(job)]
            matching.sort(key=lambda job: job.created_at, reverse=True)
            page = [copy.deepcopy(job) for job in matching[query.offset:query.offset + query.limit]]

        filtered = len(matching)
        return PaginatedResult(
            items=page,
            total_count=total,
            filtered_count=filtered,
            offset=query.offset,
            limit=query.limit,
            has_more=query.offset + len(page) < filtered,
            newest_timestamp=page[0].created_at if page else None,
            oldest_timestamp=page[-1].created_at if page else None,
        )

    def scan_grouped(
        self,
        query: QueueFilter,
        page: int = 1,
        limit: int = DEFAULT_GROUPED_LIMIT,
        max_limit: int = MAX_QUEUE_LIMIT,
        now: Optional[float] = None,
    ) -> GroupedResult:
        """Filter, order newest first, paginate, then group by local creation day.

        ``query.limit``/``query.offset`` are ignored; pagination is by
        1-based ``page``. ``now`` fixes the reference time for the
        "Today"/"Yesterday" labels.
        """
        page = max(1, int(page))
        limit = max(1, min(int(limit), max_limit))
        with self._lock:
            matching = [job for job in reversed(self._jobs.values()) if query.matches(job)]
            matching.sort(key=lambda job: job.created_at, reverse=True)
            skip = (page - 1) * limit
            page_jobs = [copy.deepcopy(job) for job in matching[skip:skip + limit]]

        day_counts: Dict[date, int] = {}
        for job in matching:
            day = _local_day(job.created_at)
            day_counts[day] = day_counts.get(day, 0) + 1

        today = _local_day(time.time() if now is None else now)
        groups: List[JobDateGroup] = []
        for job in page_jobs:
            day = _local_day(job.created_at)
            if not groups or groups[-1].date != day.isoformat():
                groups.append(
                    JobDateGroup(
                        date=day.isoformat(),
                        label=_day_label(day, today),
                        timestamp=time.mktime(day.timetuple()),
                        count=day_counts[day],
                    )
                )
            groups[-1].items.append(job)

        total = len(matching)
        total_pages = max(1, -(-total // limit))
        return GroupedResult(
            groups=groups,
            total_count=total,
            page=page,
            total_pages=total_pages,
            limit=limit,
            has_more=page < total_pages,
            has_prev=page > 1,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def save(self) -> None:
        """Write the whole store to the recovery file.

        Raises:
            PersistenceWarning: If the file cannot be written.
        """
        if self.state_file is None:
            return
        # Snapshot under the write lock so files land in snapshot order
        with self._write_lock:
            with self._lock:
                items = [job.to_dict() for job in self._jobs.values()]
                self._dirty = False
            state = {"version": STATE_VERSION, "items": items}

            tmp_path = self.state_file.with_name(self.state_file.name + ".tmp")
            try:
                self.state_file.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(state, f, indent=2)
                os.replace(tmp_path, self.state_file)
            except (OSError, TypeError, ValueError) as exc:
                with self._lock:
                    self._dirty = True
                raise PersistenceWarning(f"Failed to write {self.state_file}: {exc}") from exc
            self._last_persist = time.monotonic()

    def persist(self, force: bool = False) -> bool:
        """Save now, or just mark dirty when the last write was too recent.

        Write failures are logged and swallowed; the store stays usable in
        memory.
        """
        if self.state_file is None:
            return False
        if not force and time.monotonic() - self._last_persist < self.persist_interval:
            with self._lock:
                self._dirty = True
            return False
        try:
            self.save()
        except PersistenceWarning as exc:
            logger.warning("%s; continuing in memory", exc)
            return False
        return True

    def flush(self) -> bool:
        """Write pending changes, if any."""
        with self._lock:
            dirty = self._dirty
        return self.persist(force=True) if dirty else False

    def load(self, interrupted_policy: str = "fail") -> int:
        """Populate the store from the recovery file.

        Missing or unparsable files leave the store empty. Jobs recorded as
        processing were interrupted by an unclean exit and are either failed
        or re-queued according to ``interrupted_policy``.
        """
        if self.state_file is None or not self.state_file.exists():
            return 0
        try:
            with open(self.state_file, "r", encoding="utf-8") as f:
                state = json.load(f)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to load queue state from %s: %s", self.state_file, exc)
            return 0

        items = state.get("items", []) if isinstance(state, dict) else state
        if not isinstance(items, list):
            logger.warning("Queue state in %s has no item list, ignoring", self.state_file)
            return 0

        loaded: List[Job] = []
        interrupted = 0
        for raw in items:
            try:
                job = Job.from_dict(raw)
            except (KeyError, TypeError, ValueError, AttributeError) as exc:
                logger.warning("Skipping malformed job record: %s", exc)
                continue
            if job.status is JobStatus.PROCESSING:
                interrupted += 1
                _recover_interrupted(job, interrupted_policy)
            loaded.append(job)

        with self._lock:
            for job in loaded:
                self._jobs[job.job_id] = job
            self._dirty = interrupted > 0

        logger.info(
            "Loaded %d jobs from state file (%d interrupted, policy=%s)",
            len(loaded),
            interrupted,
            interrupted_policy,
        )
        return len(loaded)


def _recover_interrupted(job: Job, policy: str) -> None:
    if policy == "requeue":
        job.status = JobStatus.PENDING
        job.started_at = None
        job.progress.step = 0
        job.preview = None
        return
    job.status = JobStatus.FAILED
    job.error = INTERRUPTED_JOB_ERROR
    job.completed_at = time.time()
    job.result = None
    job.preview = None


def _local_day(timestamp: float) -> date:
    return datetime.fromtimestamp(timestamp).date()


def _day_label(day: date, today: date) -> str:
    if day == today:
        return "Today"
    if day == today - timedelta(days=1):
        return "Yesterday"
    return day.strftime("%b %d, %Y")
