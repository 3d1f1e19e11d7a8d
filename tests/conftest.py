"""Shared fixtures and test doubles."""

from __future__ import annotations

import logging
import threading
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest

from sdqueue.backend.clients.engine_base import InferenceEngine, ModelLoadRequest
from sdqueue.backend.config import ModelPaths
from sdqueue.backend.models.job import JobType
from sdqueue.backend.models.preview import PreviewSettings
from sdqueue.backend.services.error_capture import ErrorCaptureBridge
from sdqueue.backend.services.event_broadcaster import EventBroadcaster
from sdqueue.backend.services.model_guard import LoadedModelGuard
from sdqueue.backend.services.model_registry import ModelRegistry
from sdqueue.backend.services.queue_manager import QueueManager
from sdqueue.backend.store.job_store import JobStore
from sdqueue.backend.utils.exceptions import EngineExecutionError, JobCancelledError

MODEL_FILES = [
    "checkpoints/modelA.safetensors",
    "checkpoints/modelB.safetensors",
    "checkpoints/readme.txt",
    "diffusion_models/flux1-dev.gguf",
    "vae/ae.safetensors",
    "loras/detail.safetensors",
    "esrgan/RealESRGAN_x4.pth",
]


class StubEngine(InferenceEngine):
    """In-memory engine that records every call it receives.

    ``params["fail"]`` makes a run raise with that message after logging
    ``error_lines`` to the engine logger. Setting ``gate`` blocks each run
    until the event is set. With ``interruptible`` off the engine ignores
    ``stop_flag`` and always runs to completion.
    """

    logger_name = "tests.stub-engine"

    def __init__(self, steps: int = 4, delay: float = 0.005) -> None:
        self.steps = steps
        self.delay = delay
        self.calls: List[tuple] = []
        self.requests: List[ModelLoadRequest] = []
        self.error_lines: List[str] = []
        self.load_error: Optional[str] = None
        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()
        self.interruptible = True
        self.active = 0
        self.max_active = 0
        self._lock = threading.Lock()

    @property
    def supports_interruption(self) -> bool:
        return self.interruptible

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def load(self, request: ModelLoadRequest) -> None:
        self._record("load", request.model_name)
        self.requests.append(request)
        if self.load_error:
            raise RuntimeError(self.load_error)

    def unload(self) -> None:
        self._record("unload")

    def load_upscaler(self, model_path: Path) -> None:
        self._record("load_upscaler", model_path.name)

    def unload_upscaler(self) -> None:
        self._record("unload_upscaler")

    def run(
        self,
        job_type: JobType,
        params: Dict[str, Any],
        output_dir: Path,
        progress_callback: Callable[[int, int], None],
        preview_callback=None,
        preview_settings: Optional[PreviewSettings] = None,
        stop_flag: Optional[threading.Event] = None,
    ) -> List[Path]:
        with self._lock:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        try:
            self._record("run", params.get("prompt"))
            self.started.set()
            if self.gate is not None:
                self.gate.wait(timeout=10)
            for step in range(1, self.steps + 1):
                if self.interruptible and stop_flag is not None and stop_flag.is_set():
                    raise JobCancelledError(f"Cancelled at step {step}")
                if self.delay:
                    time.sleep(self.delay)
                progress_callback(step, self.steps)
                if preview_callback is not None and preview_settings is not None and preview_settings.enabled:
                    preview_callback(step, b"jpeg-%d" % step, 8, 8, 1, False)

            if params.get("fail"):
                for line in self.error_lines:
                    logging.getLogger(self.logger_name).error(line)
                raise EngineExecutionError(params["fail"])

            output_dir.mkdir(parents=True, exist_ok=True)
            path = output_dir / "image_000.png"
            path.write_bytes(b"png")
            return [path]
        finally:
            with self._lock:
                self.active -= 1

    def release(self) -> None:
        if self.gate is not None:
            self.gate.set()


def wait_for(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


@pytest.fixture
def models_root(tmp_path: Path) -> Path:
    root = tmp_path / "models"
    for rel in MODEL_FILES:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(b"0" * 16)
    return root


@pytest.fixture
def registry(models_root: Path) -> ModelRegistry:
    registry = ModelRegistry(ModelPaths.from_root(models_root))
    registry.scan()
    return registry


@pytest.fixture
def engine() -> StubEngine:
    return StubEngine()


@pytest.fixture
def broadcaster() -> EventBroadcaster:
    return EventBroadcaster()


@pytest.fixture
def guard(engine: StubEngine, registry: ModelRegistry, broadcaster: EventBroadcaster) -> LoadedModelGuard:
    return LoadedModelGuard(engine, registry, broadcaster)


@pytest.fixture
def state_file(tmp_path: Path) -> Path:
    return tmp_path / "queue_state.json"


@pytest.fixture
def make_manager(guard, broadcaster, engine, state_file, tmp_path):
    """Factory for queue managers; every manager is stopped on teardown."""
    managers: List[QueueManager] = []

    def _make(store: Optional[JobStore] = None, **kwargs) -> QueueManager:
        kwargs.setdefault("progress_throttle_ms", 0)
        kwargs.setdefault("preview_throttle_ms", 0)
        manager = QueueManager(
            guard,
            store or JobStore(state_file, persist_interval=0.0),
            broadcaster,
            ErrorCaptureBridge(),
            output_dir=tmp_path / "output",
            **kwargs,
        )
        managers.append(manager)
        return manager

    yield _make

    engine.release()
    for manager in managers:
        manager.stop()
