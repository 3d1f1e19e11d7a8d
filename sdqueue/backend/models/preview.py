"""Live preview configuration and frames."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict


class PreviewMode(Enum):
    """How intermediate latents are decoded for previews."""

    NONE = "none"
    PROJ = "proj"  # Cheap latent projection
    TAE = "tae"  # Tiny autoencoder
    VAE = "vae"  # Full VAE decode, slowest


@dataclass(frozen=True)
class PreviewSettings:
    """Process-wide preview configuration."""

    mode: PreviewMode = PreviewMode.TAE
    interval: int = 1
    max_size: int = 256
    quality: int = 75

    @property
    def enabled(self) -> bool:
        return self.mode is not PreviewMode.NONE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "interval": self.interval,
            "max_size": self.max_size,
            "quality": self.quality,
        }


@dataclass(frozen=True)
class PreviewFrame:
    """Latest encoded preview for a running job."""

    job_id: str
    step: int
    data: bytes
    width: int = 0
    height: int = 0
    frame_count: int = 1
    is_noisy: bool = False
    content_type: str = "image/jpeg"

    def to_event_data(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "step": self.step,
            "frame_count": self.frame_count,
            "width": self.width,
            "height": self.height,
            "is_noisy": self.is_noisy,
            "preview_url": f"/api/jobs/{self.job_id}/preview",
        }
