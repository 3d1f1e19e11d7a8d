"""Construction of the long-lived backend services."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from sdqueue.backend.clients.engine_base import InferenceEngine
from sdqueue.backend.config import (
    INTERRUPTED_JOB_POLICY,
    MODELS_DIR,
    OUTPUT_DIR,
    STATE_FILE,
    ModelPaths,
    PreviewConfig,
)
from sdqueue.backend.services.error_capture import ErrorCaptureBridge
from sdqueue.backend.services.event_broadcaster import EventBroadcaster
from sdqueue.backend.services.model_guard import LoadedModelGuard
from sdqueue.backend.services.model_registry import ModelRegistry
from sdqueue.backend.services.queue_manager import QueueManager
from sdqueue.backend.store.job_store import JobStore
from sdqueue.backend.utils.exceptions import InvalidRequest
from sdqueue.backend.utils.logging_utils import logger


@dataclass
class Services:
    registry: ModelRegistry
    model_guard: LoadedModelGuard
    store: JobStore
    broadcaster: EventBroadcaster
    error_capture: ErrorCaptureBridge
    queue_manager: QueueManager


def build_services(
    engine: Optional[InferenceEngine] = None,
    models_root: Path = MODELS_DIR,
    state_file: Optional[Path] = STATE_FILE,
    output_dir: Path = OUTPUT_DIR,
    preview_config: Optional[PreviewConfig] = None,
    interrupted_policy: str = INTERRUPTED_JOB_POLICY,
    **queue_options,
) -> Services:
    """Wire registry, guard, store, broadcaster and scheduler together.

    The stable-diffusion.cpp engine is used unless ``engine`` is given.
    """
    paths = ModelPaths.from_root(models_root)
    if engine is None:
        from sdqueue.backend.clients.sdcpp_engine import StableDiffusionCppEngine

        engine = StableDiffusionCppEngine(lora_dir=paths.loras)

    registry = ModelRegistry(paths)
    broadcaster = EventBroadcaster()
    model_guard = LoadedModelGuard(engine, registry, broadcaster)
    store = JobStore(state_file)
    error_capture = ErrorCaptureBridge()
    queue_manager = QueueManager(
        model_guard,
        store,
        broadcaster,
        error_capture,
        output_dir=output_dir,
        interrupted_policy=interrupted_policy,
        **queue_options,
    )

    preview_config = preview_config or PreviewConfig()
    try:
        queue_manager.set_preview_settings(
            preview_config.mode,
            preview_config.interval,
            preview_config.max_size,
            preview_config.quality,
        )
    except InvalidRequest as exc:
        logger.warning("Ignoring invalid preview configuration: %s", exc)

    return Services(
        registry=registry,
        model_guard=model_guard,
        store=store,
        broadcaster=broadcaster,
        error_capture=error_capture,
        queue_manager=queue_manager,
    )
