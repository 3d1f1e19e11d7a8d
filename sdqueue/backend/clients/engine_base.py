"""Base inference engine interface."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sdqueue.backend.config import ENGINE_LOGGER_NAME
from sdqueue.backend.models.job import JobType
from sdqueue.backend.models.model_descriptor import ModelCategory
from sdqueue.backend.models.preview import PreviewSettings

# (step, total_steps)
ProgressCallback = Callable[[int, int], None]
# (step, jpeg_bytes, width, height, frame_count, is_noisy)
PreviewCallback = Callable[[int, bytes, int, int, int, bool], None]


@dataclass(frozen=True)
class ModelLoadRequest:
    """Everything the engine needs to make a model resident."""

    model_name: str
    model_path: Path
    category: ModelCategory = ModelCategory.CHECKPOINT
    architecture: str = ""
    components: Dict[str, Path] = field(default_factory=dict)
    options: Dict[str, Any] = field(default_factory=dict)

    @property
    def signature(self) -> tuple:
        return (
            self.model_name,
            self.architecture,
            tuple(sorted((k, str(v)) for k, v in self.components.items())),
            tuple(sorted((k, repr(v)) for k, v in self.options.items())),
        )


class InferenceEngine(ABC):
    """Abstract base class for generation backends.

    Engines are not reentrant: the loaded-model guard makes sure that at
    most one of ``load``, ``unload`` or ``run`` is in flight at a time.
    Native log lines are expected on the ``logger_name`` logger.
    """

    logger_name: str = ENGINE_LOGGER_NAME

    @property
    def supports_interruption(self) -> bool:
        """True if ``run`` checks ``stop_flag`` between steps."""
        return False

    @abstractmethod
    def load(self, request: ModelLoadRequest) -> None:
        """Load model weights.

        Raises:
            Exception: Any failure; the guard converts it to ``ModelLoadError``.
        """
        ...

    @abstractmethod
    def unload(self) -> None:
        """Release the resident model, if any."""
        ...

    @abstractmethod
    def run(
        self,
        job_type: JobType,
        params: Dict[str, Any],
        output_dir: Path,
        progress_callback: ProgressCallback,
        preview_callback: Optional[PreviewCallback] = None,
        preview_settings: Optional[PreviewSettings] = None,
        stop_flag: Optional[threading.Event] = None,
    ) -> List[Path]:
        """Run one generation and return the artifact paths it wrote.

        Raises:
            JobCancelledError: If ``stop_flag`` was observed at a step checkpoint.
            Exception: Any engine failure.
        """
        ...

    def load_upscaler(self, model_path: Path) -> None:
        raise NotImplementedError(f"{type(self).__name__} has no up-scaler support")

    def unload_upscaler(self) -> None:
        pass
