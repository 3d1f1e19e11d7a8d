"""Capture engine error log lines while a job is executing."""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from typing import Deque, Dict, Optional, Tuple

from sdqueue.backend.config import ERROR_CAPTURE_MAX_AGE_SECONDS, ERROR_CAPTURE_MAX_LINES


class ErrorCaptureBridge:
    """Single-slot capture window for engine error lines.

    The scheduler opens a window around each engine invocation. Error lines
    arriving while no window is open are dropped.
    """

    def __init__(
        self,
        max_lines: int = ERROR_CAPTURE_MAX_LINES,
        max_age_seconds: float = ERROR_CAPTURE_MAX_AGE_SECONDS,
    ) -> None:
        self.max_age_seconds = max_age_seconds
        self._lock = threading.Lock()
        self._window_job_id: Optional[str] = None
        self._errors: Deque[Tuple[str, float]] = deque(maxlen=max_lines)
        self._handlers: Dict[str, ErrorCaptureHandler] = {}

    @property
    def window_job_id(self) -> Optional[str]:
        with self._lock:
            return self._window_job_id

    def begin_window(self, job_id: str) -> None:
        with self._lock:
            if self._window_job_id is not None:
                raise RuntimeError(
                    f"Capture window already open for job {self._window_job_id}"
                )
            self._window_job_id = job_id
            self._errors.clear()

    def capture(self, message: str) -> None:
        trimmed = (message or "").strip()
        if not trimmed:
            return
        with self._lock:
            if self._window_job_id is None:
                return
            self._errors.append((trimmed, time.monotonic()))

    def end_window(self) -> Optional[str]:
        """Close the window and return the captured lines joined by ``"; "``."""
        with self._lock:
            now = time.monotonic()
            lines = [msg for msg, ts in self._errors if now - ts < self.max_age_seconds]
            self._errors.clear()
            self._window_job_id = None
        return "; ".join(lines) or None

    def attach(self, logger_name: str) -> ErrorCaptureHandler:
        """Start forwarding ERROR records of ``logger_name`` into this bridge."""
        with self._lock:
            handler = self._handlers.get(logger_name)
            if handler is None:
                handler = ErrorCaptureHandler(self)
                logging.getLogger(logger_name).addHandler(handler)
                self._handlers[logger_name] = handler
        return handler

    def detach(self, logger_name: str) -> None:
        with self._lock:
            handler = self._handlers.pop(logger_name, None)
        if handler is not None:
            logging.getLogger(logger_name).removeHandler(handler)


class ErrorCaptureHandler(logging.Handler):
    """Logging handler that forwards error records to an ``ErrorCaptureBridge``."""

    def __init__(self, bridge: ErrorCaptureBridge):
        super().__init__(level=logging.ERROR)
        self.bridge = bridge

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.bridge.capture(self.format(record))
        except (ValueError, TypeError):
            self.handleError(record)
