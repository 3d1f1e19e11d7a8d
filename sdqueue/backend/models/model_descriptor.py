"""Model catalog entries."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional


class ModelCategory(Enum):
    """Category of a discovered model file."""

    CHECKPOINT = "checkpoint"  # SD1.x, SD2.x, SDXL
    DIFFUSION = "diffusion"  # Flux, SD3, Wan, Qwen
    VAE = "vae"
    LORA = "lora"
    CLIP = "clip"
    T5 = "t5"
    CONTROLNET = "controlnet"
    LLM = "llm"
    ESRGAN = "esrgan"  # Up-scalers

    @property
    def is_main_model(self) -> bool:
        return self in (ModelCategory.CHECKPOINT, ModelCategory.DIFFUSION)

    @property
    def catalog_key(self) -> str:
        return _CATALOG_KEYS[self]


_CATALOG_KEYS = {
    ModelCategory.CHECKPOINT: "checkpoints",
    ModelCategory.DIFFUSION: "diffusion_models",
    ModelCategory.VAE: "vae",
    ModelCategory.LORA: "loras",
    ModelCategory.CLIP: "clip",
    ModelCategory.T5: "t5",
    ModelCategory.CONTROLNET: "controlnets",
    ModelCategory.LLM: "llm",
    ModelCategory.ESRGAN: "esrgan",
}


@dataclass(frozen=True)
class ModelDescriptor:
    """A model file found by a registry scan.

    ``name`` is the path relative to the category directory and is what
    jobs use to refer to the model.
    """

    category: ModelCategory
    name: str
    path: Path
    size_bytes: int = 0

    @property
    def extension(self) -> str:
        return self.path.suffix.lower().lstrip(".")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "type": self.category.value,
            "file_extension": self.extension,
            "size_bytes": self.size_bytes,
        }


@dataclass(frozen=True)
class ModelFilter:
    """Catalog listing filter."""

    category: Optional[ModelCategory] = None
    extension: Optional[str] = None
    search: Optional[str] = None

    def matches(self, model: ModelDescriptor) -> bool:
        if self.category is not None and model.category is not self.category:
            return False
        if self.extension and model.extension != self.extension.lower().lstrip("."):
            return False
        if self.search and self.search.lower() not in model.name.lower():
            return False
        return True

    def is_empty(self) -> bool:
        return self.category is None and not self.extension and not self.search
