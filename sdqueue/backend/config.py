"""
Backend configuration for the generation queue server.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


APP_NAME = "SD Queue Server"

DATA_DIR = Path(os.environ.get("SDQUEUE_DATA_DIR", Path.home() / ".sdqueue"))
OUTPUT_DIR = Path(os.environ.get("SDQUEUE_OUTPUT_DIR", DATA_DIR / "output"))
LOG_DIR = DATA_DIR / "logs"
STATE_FILE = DATA_DIR / "queue_state.json"

MODELS_DIR = Path(os.environ.get("SDQUEUE_MODELS_DIR", DATA_DIR / "models"))
MODEL_EXTENSIONS = {".safetensors", ".gguf", ".ckpt", ".pt", ".pth"}

# Queue listing
DEFAULT_QUEUE_LIMIT = 10
MAX_QUEUE_LIMIT = 100
DEFAULT_GROUPED_LIMIT = 20

# Recovery file writes between terminal transitions are coalesced
PERSIST_MIN_INTERVAL_SECONDS = float(os.environ.get("SDQUEUE_PERSIST_INTERVAL", "2.0"))

# Event throttling
PROGRESS_THROTTLE_MS = 100
PREVIEW_THROTTLE_MS = 200

# What to do with a job found "processing" in the recovery file: "fail" | "requeue"
INTERRUPTED_JOB_POLICY = os.environ.get("SDQUEUE_INTERRUPTED_JOB_POLICY", "fail").lower()
INTERRUPTED_JOB_ERROR = "Interrupted by restart"

# Engine error capture
ENGINE_LOGGER_NAME = os.environ.get("SDQUEUE_ENGINE_LOGGER", "stable-diffusion-cpp-python")
ERROR_CAPTURE_MAX_LINES = 10
ERROR_CAPTURE_MAX_AGE_SECONDS = 30.0

# Event fan-out
SUBSCRIBER_QUEUE_SIZE = int(os.environ.get("SDQUEUE_SUBSCRIBER_QUEUE_SIZE", "256"))
SSE_IDLE_TIMEOUT_SECONDS = int(os.environ.get("SSE_IDLE_TIMEOUT_SECONDS", "300"))

# Engine defaults
DEFAULT_STEPS = {"txt2img": 20, "img2img": 20, "txt2vid": 30}
ENGINE_THREADS = int(os.environ.get("SDQUEUE_ENGINE_THREADS", "-1"))

DEFAULT_HOST = os.environ.get("SDQUEUE_HOST", "127.0.0.1")
DEFAULT_PORT = int(os.environ.get("SDQUEUE_PORT", "8080"))

ALLOWED_ORIGINS = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]


@dataclass
class ModelPaths:
    """Per-category model directories, rooted at ``MODELS_DIR`` by default."""

    checkpoints: Path = MODELS_DIR / "checkpoints"
    diffusion_models: Path = MODELS_DIR / "diffusion_models"
    vae: Path = MODELS_DIR / "vae"
    loras: Path = MODELS_DIR / "loras"
    clip: Path = MODELS_DIR / "clip"
    t5: Path = MODELS_DIR / "t5"
    controlnet: Path = MODELS_DIR / "controlnet"
    llm: Path = MODELS_DIR / "llm"
    esrgan: Path = MODELS_DIR / "esrgan"

    @classmethod
    def from_root(cls, root: Path) -> ModelPaths:
        root = Path(root)
        return cls(
            checkpoints=root / "checkpoints",
            diffusion_models=root / "diffusion_models",
            vae=root / "vae",
            loras=root / "loras",
            clip=root / "clip",
            t5=root / "t5",
            controlnet=root / "controlnet",
            llm=root / "llm",
            esrgan=root / "esrgan",
        )


@dataclass
class PreviewConfig:
    """Startup preview configuration with env overrides."""

    mode: str = field(default_factory=lambda: os.environ.get("SDQUEUE_PREVIEW_MODE", "tae"))
    interval: int = 1
    max_size: int = 256
    quality: int = 75

    def __post_init__(self) -> None:
        env_val = os.environ.get("SDQUEUE_PREVIEW_INTERVAL")
        if env_val:
            try:
                val = int(env_val)
                if val > 0:
                    self.interval = val
            except ValueError:
                pass
