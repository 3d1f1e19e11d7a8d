"""Exclusive owner of the engine's resident model."""

from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional

from sdqueue.backend.clients.engine_base import InferenceEngine, ModelLoadRequest
from sdqueue.backend.models.event import EventKind
from sdqueue.backend.models.job import JobType
from sdqueue.backend.models.model_descriptor import ModelCategory
from sdqueue.backend.services.event_broadcaster import EventBroadcaster
from sdqueue.backend.services.model_registry import ModelRegistry, detect_architecture
from sdqueue.backend.utils.exceptions import ModelLoadError
from sdqueue.backend.utils.logging_utils import logger

# model_settings key -> (component name, registry category)
COMPONENT_SETTINGS = {
    "vae_model": ("vae", ModelCategory.VAE),
    "clip_l_model": ("clip_l", ModelCategory.CLIP),
    "clip_g_model": ("clip_g", ModelCategory.CLIP),
    "clip_vision_model": ("clip_vision", ModelCategory.CLIP),
    "t5xxl_model": ("t5xxl", ModelCategory.T5),
    "llm_model": ("llm", ModelCategory.LLM),
    "controlnet_model": ("controlnet", ModelCategory.CONTROLNET),
}


def components_from_settings(model_settings: Mapping[str, Any]) -> Dict[str, str]:
    """Pick the component model names out of a job's model settings."""
    return {
        key: value
        for key, value in model_settings.items()
        if key in COMPONENT_SETTINGS and isinstance(value, str) and value
    }


@dataclass(frozen=True)
class LoadedModelInfo:
    name: str
    architecture: str
    category: ModelCategory
    components: Dict[str, str] = field(default_factory=dict)
    loaded_at: float = field(default_factory=time.time)
    signature: tuple = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "model_name": self.name,
            "model_architecture": self.architecture,
            "model_type": self.category.value,
            "components": dict(self.components),
            "loaded_at": self.loaded_at,
        }


class LoadedModelToken:
    """Permission to run inference on the resident model.

    Only valid inside the ``ensure_loaded`` block that produced it.
    """

    def __init__(self, guard: LoadedModelGuard, model: LoadedModelInfo) -> None:
        self._guard = guard
        self.model = model

    @property
    def engine(self) -> InferenceEngine:
        return self._guard.engine

    def ensure_upscaler(self, name: str) -> None:
        self._guard.ensure_upscaler(name)

    def run(self, job_type: JobType, params: Dict[str, Any], output_dir: Path, **callbacks) -> List[Path]:
        return self._guard.engine.run(job_type, params, output_dir, **callbacks)


class LoadedModelGuard:
    """Serializes load, unload and run against the non-reentrant engine.

    ``_lock`` is held for the whole of a load/unload or a job's run.
    ``_state_lock`` only protects the bookkeeping so status reads never
    wait behind a running generation.
    """

    def __init__(
        self,
        engine: InferenceEngine,
        registry: ModelRegistry,
        broadcaster: Optional[EventBroadcaster] = None,
    ) -> None:
        self.engine = engine
        self.registry = registry
        self.broadcaster = broadcaster
        self._lock = threading.RLock()
        self._state_lock = threading.Lock()
        self._loaded: Optional[LoadedModelInfo] = None
        self._upscaler: Optional[str] = None
        self._last_error: Optional[str] = None
        self._busy = False

    # ------------------------------------------------------------------
    # Non-blocking reads
    # ------------------------------------------------------------------
    @property
    def loaded_model(self) -> Optional[LoadedModelInfo]:
        with self._state_lock:
            return self._loaded

    @property
    def upscaler(self) -> Optional[str]:
        with self._state_lock:
            return self._upscaler

    def info(self) -> Dict[str, Any]:
        with self._state_lock:
            loaded = self._loaded
            return {
                "model_loaded": loaded is not None,
                "model": loaded.to_dict() if loaded else None,
                "upscaler": self._upscaler,
                "busy": self._busy,
                "last_error": self._last_error,
            }

    # ------------------------------------------------------------------
    # Exclusive operations
    # ------------------------------------------------------------------
    @contextmanager
    def ensure_loaded(
        self,
        name: Optional[str] = None,
        architecture: str = "",
        components: Optional[Mapping[str, str]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> Iterator[LoadedModelToken]:
        """Make ``name`` resident and hold exclusive access for the block.

        With no ``name`` the currently resident model is used.

        Raises:
            ModelLoadError: If the model cannot be resolved or loaded.
        """
        with self._lock:
            info = self._ensure_locked(name, architecture, components or {}, options or {})
            with self._state_lock:
                self._busy = True
            try:
                yield LoadedModelToken(self, info)
            finally:
                with self._state_lock:
                    self._busy = False

    def load(
        self,
        name: str,
        architecture: str = "",
        components: Optional[Mapping[str, str]] = None,
        options: Optional[Mapping[str, Any]] = None,
    ) -> LoadedModelInfo:
        with self.ensure_loaded(name, architecture, components, options) as token:
            return token.model

    def unload(self) -> None:
        """Release the resident model and up-scaler. Safe to call repeatedly."""
        with self._lock:
            self._unload_upscaler_locked()
            self._unload_locked()

    def ensure_upscaler(self, name: str) -> None:
        with self._lock:
            if self.upscaler == name:
                return
            descriptor = self.registry.get_model(name, ModelCategory.ESRGAN)
            if descriptor is None:
                raise ModelLoadError(f"Upscaler not found: {name}", model_name=name)
            self._unload_upscaler_locked()
            try:
                self.engine.load_upscaler(descriptor.path)
            except Exception as exc:
                raise ModelLoadError(f"Failed to load upscaler {name}: {exc}", model_name=name) from exc
            with self._state_lock:
                self._upscaler = name
            logger.info("Upscaler loaded: %s", name)

    def unload_upscaler(self) -> None:
        with self._lock:
            self._unload_upscaler_locked()

    # ------------------------------------------------------------------
    # Internals, called with _lock held
    # ------------------------------------------------------------------
    def _ensure_locked(
        self,
        name: Optional[str],
        architecture: str,
        components: Mapping[str, str],
        options: Mapping[str, Any],
    ) -> LoadedModelInfo:
        current = self.loaded_model
        if not name:
            if current is None:
                raise ModelLoadError("No model loaded")
            return current

        request = self._build_request(name, architecture, components, options)
        if current is not None and current.signature == request.signature:
            return current

        self._unload_locked()
        started = time.monotonic()
        try:
            self.engine.load(request)
        except Exception as exc:
            message = f"Failed to load model {name}: {exc}"
            with self._state_lock:
                self._loaded = None
                self._last_error = message
            logger.error(message)
            self._emit(EventKind.MODEL_LOAD_FAILED, model_name=name, error=message)
            raise ModelLoadError(message, model_name=name, architecture=request.architecture) from exc

        info = LoadedModelInfo(
            name=request.model_name,
            architecture=request.architecture,
            category=request.category,
            components=dict(components),
            signature=request.signature,
        )
        with self._state_lock:
            self._loaded = info
            self._last_error = None
        logger.info(
            "Model loaded: %s (%s) in %.1fs",
            info.name,
            info.architecture or "unknown",
            time.monotonic() - started,
        )
        self._emit(EventKind.MODEL_LOADED, **info.to_dict())
        return info

    def _build_request(
        self,
        name: str,
        architecture: str,
        components: Mapping[str, str],
        options: Mapping[str, Any],
    ) -> ModelLoadRequest:
        descriptor = self.registry.find_main_model(name)
        if descriptor is None:
            raise ModelLoadError(f"Model not found: {name}", model_name=name, architecture=architecture)

        resolved: Dict[str, Path] = {}
        for key, value in components.items():
            component, category = COMPONENT_SETTINGS[key]
            model = self.registry.get_model(value, category)
            if model is None:
                raise ModelLoadError(f"{component} model not found: {value}", model_name=name)
            resolved[component] = model.path

        return ModelLoadRequest(
            model_name=descriptor.name,
            model_path=descriptor.path,
            category=descriptor.category,
            architecture=architecture or detect_architecture(descriptor.name, descriptor.category),
            components=resolved,
            options=dict(options),
        )

    def _unload_locked(self) -> None:
        current = self.loaded_model
        if current is None:
            return
        with self._state_lock:
            self._loaded = None
        logger.info("Unloading model: %s", current.name)
        try:
            self.engine.unload()
        except Exception as exc:
            message = f"Failed to unload model {current.name}: {exc}"
            with self._state_lock:
                self._last_error = message
            raise ModelLoadError(message, model_name=current.name) from exc
        finally:
            self._emit(EventKind.MODEL_UNLOADED, model_name=current.name)

    def _unload_upscaler_locked(self) -> None:
        name = self.upscaler
        if name is None:
            return
        with self._state_lock:
            self._upscaler = None
        self.engine.unload_upscaler()
        logger.info("Upscaler unloaded: %s", name)

    def _emit(self, kind: EventKind, **data) -> None:
        if self.broadcaster is not None:
            self.broadcaster.emit(kind, **data)
