"""stable-diffusion.cpp engine adapter.

Wraps the ``stable_diffusion_cpp`` binding. The binding is imported on the
first load so the server can start (and list models) without it.
"""

from __future__ import annotations

import inspect
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from sdqueue.backend.clients.engine_base import (
    InferenceEngine,
    ModelLoadRequest,
    PreviewCallback,
    ProgressCallback,
)
from sdqueue.backend.config import DEFAULT_STEPS, ENGINE_THREADS
from sdqueue.backend.models.job import JobType
from sdqueue.backend.models.model_descriptor import ModelCategory
from sdqueue.backend.models.preview import PreviewSettings
from sdqueue.backend.utils.exceptions import EngineExecutionError
from sdqueue.backend.utils.image_utils import encode_preview, load_image, save_animation, save_images
from sdqueue.backend.utils.logging_utils import logger

# model_settings component key -> StableDiffusion constructor argument
_COMPONENT_ARGS = {
    "vae": "vae_path",
    "clip_l": "clip_l_path",
    "clip_g": "clip_g_path",
    "clip_vision": "clip_vision_path",
    "t5xxl": "t5xxl_path",
    "llm": "llm_path",
    "controlnet": "control_net_path",
}

# job params key -> generate_* argument
_PARAM_ARGS = {
    "prompt": "prompt",
    "negative_prompt": "negative_prompt",
    "width": "width",
    "height": "height",
    "cfg_scale": "cfg_scale",
    "seed": "seed",
    "sampler": "sample_method",
    "scheduler": "scheduler",
    "batch_count": "batch_count",
    "clip_skip": "clip_skip",
    "strength": "strength",
    "video_frames": "video_frames",
}


def _supported_kwargs(fn: Callable[..., Any], kwargs: Dict[str, Any]) -> Dict[str, Any]:
    """Drop arguments the installed binding version does not accept."""
    try:
        params = inspect.signature(fn).parameters
    except (TypeError, ValueError):
        return kwargs
    if any(p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values()):
        return kwargs
    return {k: v for k, v in kwargs.items() if k in params}


class StableDiffusionCppEngine(InferenceEngine):
    """Engine backed by a single ``StableDiffusion`` context."""

    def __init__(
        self,
        lora_dir: Optional[Path] = None,
        n_threads: int = ENGINE_THREADS,
        input_dir: Path = Path("."),
    ) -> None:
        self.lora_dir = lora_dir
        self.n_threads = n_threads
        self.input_dir = input_dir
        self._ctx = None
        self._upscaler = None
        self._loaded: Optional[ModelLoadRequest] = None

    def load(self, request: ModelLoadRequest) -> None:
        from stable_diffusion_cpp import StableDiffusion

        kwargs: Dict[str, Any] = {
            "n_threads": self.n_threads,
            "verbose": True,
        }
        if request.category is ModelCategory.DIFFUSION:
            kwargs["diffusion_model_path"] = str(request.model_path)
        else:
            kwargs["model_path"] = str(request.model_path)
        if self.lora_dir is not None:
            kwargs["lora_model_dir"] = str(self.lora_dir)
        for component, path in request.components.items():
            arg = _COMPONENT_ARGS.get(component)
            if arg is None:
                raise ValueError(f"Unsupported model component: {component}")
            kwargs[arg] = str(path)
        kwargs.update(request.options)

        logger.info("Loading %s (%s) via stable-diffusion.cpp", request.model_name, request.architecture or "auto")
        self._ctx = StableDiffusion(**_supported_kwargs(StableDiffusion.__init__, kwargs))
        self._loaded = request

    def unload(self) -> None:
        ctx, self._ctx = self._ctx, None
        self._loaded = None
        if ctx is not None:
            close = getattr(ctx, "close", None)
            if callable(close):
                close()

    def load_upscaler(self, model_path: Path) -> None:
        from stable_diffusion_cpp import StableDiffusion

        self.unload_upscaler()
        kwargs = {"upscaler_path": str(model_path), "n_threads": self.n_threads}
        self._upscaler = StableDiffusion(**_supported_kwargs(StableDiffusion.__init__, kwargs))

    def unload_upscaler(self) -> None:
        self._upscaler = None

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
        if self._ctx is None:
            raise EngineExecutionError("No model loaded")

        kwargs: Dict[str, Any] = {
            arg: params[key] for key, arg in _PARAM_ARGS.items() if params.get(key) is not None
        }
        kwargs["sample_steps"] = int(params.get("steps", DEFAULT_STEPS[job_type.value]))
        kwargs["progress_callback"] = lambda step, steps, _time: progress_callback(step, steps)

        if preview_callback is not None and preview_settings is not None and preview_settings.enabled:
            def _on_preview(step: int, frames: List[Any], is_noisy: bool = False) -> None:
                if not frames:
                    return
                data, width, height = encode_preview(frames[0], preview_settings.max_size, preview_settings.quality)
                preview_callback(step, data, width, height, len(frames), is_noisy)

            kwargs["preview_method"] = preview_settings.mode.value
            kwargs["preview_interval"] = preview_settings.interval
            kwargs["preview_callback"] = _on_preview

        if job_type is JobType.TXT2IMG:
            images = self._generate(self._ctx.generate_image, kwargs)
            paths = save_images(images, output_dir)
        elif job_type is JobType.IMG2IMG:
            kwargs["init_image"] = load_image(str(params["init_image"]), self.input_dir)
            images = self._generate(self._ctx.generate_image, kwargs)
            paths = save_images(images, output_dir)
        elif job_type is JobType.TXT2VID:
            frames = self._generate(self._ctx.generate_video, kwargs)
            paths = [save_animation(frames, output_dir, fps=int(params.get("fps", 16)))]
        else:
            raise EngineExecutionError(f"Unsupported job type: {job_type}")

        upscaler_factor = int(params.get("upscale_factor", 0) or 0)
        if self._upscaler is not None and upscaler_factor > 1:
            paths = self._upscale(paths, upscaler_factor, output_dir)
        return paths

    @staticmethod
    def _generate(fn: Callable[..., Any], kwargs: Dict[str, Any]) -> List[Any]:
        result = fn(**_supported_kwargs(fn, kwargs))
        if not result:
            raise EngineExecutionError("Engine returned no images")
        return list(result)

    def _upscale(self, paths: List[Path], factor: int, output_dir: Path) -> List[Path]:
        upscale = getattr(self._upscaler, "upscale", None)
        if upscale is None:
            logger.warning("Installed binding has no upscale(); keeping original outputs")
            return paths
        images = [upscale(images=[load_image(str(p))], upscale_factor=factor)[0] for p in paths]
        return save_images(images, output_dir, prefix="upscaled")
