"""Model discovery: scans category directories into a read-mostly catalog."""

from __future__ import annotations

import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union

from sdqueue.backend.config import MODEL_EXTENSIONS, ModelPaths
from sdqueue.backend.models.model_descriptor import ModelCategory, ModelDescriptor, ModelFilter
from sdqueue.backend.utils.logging_utils import logger

# ModelPaths attribute holding each category's directory
CATEGORY_DIRS = {
    ModelCategory.CHECKPOINT: "checkpoints",
    ModelCategory.DIFFUSION: "diffusion_models",
    ModelCategory.VAE: "vae",
    ModelCategory.LORA: "loras",
    ModelCategory.CLIP: "clip",
    ModelCategory.T5: "t5",
    ModelCategory.CONTROLNET: "controlnet",
    ModelCategory.LLM: "llm",
    ModelCategory.ESRGAN: "esrgan",
}

# Checked in order; first token found in the lower-cased name wins
_ARCHITECTURE_HINTS: Tuple[Tuple[str, str], ...] = (
    ("flux", "Flux"),
    ("sd3", "SD3"),
    ("sdxl", "SDXL"),
    ("xl", "SDXL"),
    ("wan", "Wan"),
    ("qwen", "Qwen-Image"),
    ("z-image", "Z-Image"),
    ("z_image", "Z-Image"),
    ("chroma", "Chroma"),
    ("sd2", "SD2.x"),
    ("v2-", "SD2.x"),
    ("sd15", "SD1.x"),
    ("sd1.5", "SD1.x"),
    ("v1-5", "SD1.x"),
)

Catalog = Dict[ModelCategory, Tuple[ModelDescriptor, ...]]


def detect_architecture(name: str, category: ModelCategory = ModelCategory.CHECKPOINT) -> str:
    """Guess the model architecture from its file name."""
    lowered = name.lower()
    for token, architecture in _ARCHITECTURE_HINTS:
        if token in lowered:
            return architecture
    return "SD1.x" if category is ModelCategory.CHECKPOINT else ""


class ModelRegistry:
    """Catalog of model files grouped by category.

    ``scan`` builds a fresh catalog off-lock and swaps it in, so readers
    always see either the old or the new catalog in full.
    """

    def __init__(self, paths: Optional[ModelPaths] = None, extensions: Iterable[str] = MODEL_EXTENSIONS) -> None:
        self.paths = paths or ModelPaths()
        self.extensions: Set[str] = {ext.lower() for ext in extensions}
        self._lock = threading.Lock()
        self._catalog: Catalog = {category: () for category in ModelCategory}
        self.last_scan: Optional[float] = None

    def directory_for(self, category: ModelCategory) -> Path:
        return Path(getattr(self.paths, CATEGORY_DIRS[category]))

    def scan(self) -> int:
        """Rescan every category directory and replace the catalog.

        Returns:
            Number of model files discovered.
        """
        catalog: Catalog = {}
        for category in ModelCategory:
            catalog[category] = tuple(self._scan_directory(self.directory_for(category), category))

        with self._lock:
            self._catalog = catalog
            self.last_scan = time.time()

        total = sum(len(models) for models in catalog.values())
        logger.info(
            "Scanned models: %s",
            ", ".join(f"{c.value}={len(m)}" for c, m in catalog.items() if m) or "none",
        )
        return total

    def _scan_directory(self, base: Path, category: ModelCategory) -> List[ModelDescriptor]:
        if not base.is_dir():
            return []
        found: List[ModelDescriptor] = []
        for path in sorted(base.rglob("*")):
            if not path.is_file() or path.suffix.lower() not in self.extensions:
                continue
            try:
                size = path.stat().st_size
            except OSError as exc:
                logger.warning("Cannot stat model file %s: %s", path, exc)
                size = 0
            found.append(
                ModelDescriptor(
                    category=category,
                    name=path.relative_to(base).as_posix(),
                    path=path,
                    size_bytes=size,
                )
            )
        return found

    def get_models(
        self, category: Optional[ModelCategory] = None
    ) -> Union[List[ModelDescriptor], Dict[ModelCategory, List[ModelDescriptor]]]:
        """Models of one category, or the whole catalog grouped by category."""
        with self._lock:
            catalog = self._catalog
        if category is not None:
            return list(catalog.get(category, ()))
        return {c: list(models) for c, models in catalog.items()}

    def get_model(self, name: str, category: ModelCategory) -> Optional[ModelDescriptor]:
        """Look up by relative name, falling back to the name without extension."""
        with self._lock:
            models = self._catalog.get(category, ())
        for model in models:
            if model.name == name:
                return model
        for model in models:
            if Path(model.name).with_suffix("").as_posix() == name:
                return model
        return None

    def find_main_model(self, name: str) -> Optional[ModelDescriptor]:
        return self.get_model(name, ModelCategory.CHECKPOINT) or self.get_model(name, ModelCategory.DIFFUSION)

    def list_models(self, model_filter: Optional[ModelFilter] = None) -> List[ModelDescriptor]:
        model_filter = model_filter or ModelFilter()
        with self._lock:
            catalog = self._catalog
        return [m for models in catalog.values() for m in models if model_filter.matches(m)]

    def to_api_response(
        self,
        model_filter: Optional[ModelFilter] = None,
        loaded: Optional[Tuple[str, ModelCategory]] = None,
    ) -> Dict[str, Any]:
        """Serialize the catalog grouped by category for API responses."""
        model_filter = model_filter or ModelFilter()
        with self._lock:
            catalog = self._catalog

        result: Dict[str, Any] = {}
        for category in ModelCategory:
            entries = []
            for model in catalog.get(category, ()):
                if not model_filter.matches(model):
                    continue
                entry = model.to_dict()
                if category.is_main_model:
                    entry["is_loaded"] = loaded is not None and loaded == (model.name, category)
                entries.append(entry)
            result[category.catalog_key] = entries

        result["loaded_model"] = loaded[0] if loaded else None
        result["loaded_model_type"] = loaded[1].value if loaded else None
        if not model_filter.is_empty():
            applied: Dict[str, Any] = {}
            if model_filter.category is not None:
                applied["type"] = model_filter.category.value
            if model_filter.extension:
                applied["extension"] = model_filter.extension
            if model_filter.search:
                applied["search"] = model_filter.search
            result["applied_filters"] = applied
        return result
