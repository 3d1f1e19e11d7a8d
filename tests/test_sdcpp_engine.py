"""Tests for the stable-diffusion.cpp adapter against a fake binding."""

from __future__ import annotations

import sys
import threading
import types
from pathlib import Path

import pytest
from PIL import Image

from sdqueue.backend.clients.engine_base import ModelLoadRequest
from sdqueue.backend.clients.sdcpp_engine import StableDiffusionCppEngine
from sdqueue.backend.models.job import JobType
from sdqueue.backend.models.model_descriptor import ModelCategory
from sdqueue.backend.models.preview import PreviewMode, PreviewSettings
from sdqueue.backend.utils.exceptions import EngineExecutionError


class FakeStableDiffusion:
    """Mimics the parts of ``stable_diffusion_cpp.StableDiffusion`` the adapter uses."""

    instances = []

    def __init__(
        self,
        model_path: str = "",
        diffusion_model_path: str = "",
        vae_path: str = "",
        t5xxl_path: str = "",
        lora_model_dir: str = "",
        upscaler_path: str = "",
        n_threads: int = -1,
        verbose: bool = True,
    ):
        self.kwargs = {
            "model_path": model_path,
            "diffusion_model_path": diffusion_model_path,
            "vae_path": vae_path,
            "t5xxl_path": t5xxl_path,
            "lora_model_dir": lora_model_dir,
            "upscaler_path": upscaler_path,
        }
        self.calls = []
        FakeStableDiffusion.instances.append(self)

    def generate_image(
        self,
        prompt: str = "",
        negative_prompt: str = "",
        width: int = 512,
        height: int = 512,
        seed: int = 42,
        sample_steps: int = 20,
        init_image=None,
        progress_callback=None,
        preview_method: str = "none",
        preview_interval: int = 1,
        preview_callback=None,
    ):
        self.calls.append(("generate_image", prompt, sample_steps, init_image is not None, preview_method))
        for step in range(1, sample_steps + 1):
            if progress_callback:
                progress_callback(step, sample_steps, 0.01)
            if preview_callback and step % preview_interval == 0:
                preview_callback(step, [Image.new("RGB", (width, height))], False)
        return [Image.new("RGB", (width, height))]

    def generate_video(self, prompt: str = "", video_frames: int = 3, sample_steps: int = 20, progress_callback=None):
        self.calls.append(("generate_video", prompt, video_frames))
        return [Image.new("RGB", (16, 16), (i * 50, 0, 0)) for i in range(video_frames)]

    def upscale(self, images, upscale_factor: int = 4):
        return [img.resize((img.width * upscale_factor, img.height * upscale_factor)) for img in images]


@pytest.fixture(autouse=True)
def fake_binding(monkeypatch):
    module = types.ModuleType("stable_diffusion_cpp")
    module.StableDiffusion = FakeStableDiffusion
    monkeypatch.setitem(sys.modules, "stable_diffusion_cpp", module)
    FakeStableDiffusion.instances = []
    yield module


@pytest.fixture
def sd_engine(tmp_path):
    return StableDiffusionCppEngine(lora_dir=tmp_path / "loras", n_threads=2, input_dir=tmp_path)


def _request(category=ModelCategory.CHECKPOINT, **components) -> ModelLoadRequest:
    return ModelLoadRequest(
        model_name="model.safetensors",
        model_path=Path("/models/model.safetensors"),
        category=category,
        components={k: Path(f"/models/{v}") for k, v in components.items()},
    )


class TestLoad:
    def test_checkpoint_kwargs(self, sd_engine, tmp_path):
        sd_engine.load(_request())
        (ctx,) = FakeStableDiffusion.instances
        assert ctx.kwargs["model_path"] == str(Path("/models/model.safetensors"))
        assert ctx.kwargs["diffusion_model_path"] == ""
        assert ctx.kwargs["lora_model_dir"] == str(tmp_path / "loras")

    def test_diffusion_model_with_components(self, sd_engine):
        sd_engine.load(_request(ModelCategory.DIFFUSION, vae="ae.safetensors", t5xxl="t5.gguf"))
        (ctx,) = FakeStableDiffusion.instances
        assert ctx.kwargs["diffusion_model_path"] == str(Path("/models/model.safetensors"))
        assert ctx.kwargs["model_path"] == ""
        assert ctx.kwargs["vae_path"] == str(Path("/models/ae.safetensors"))
        assert ctx.kwargs["t5xxl_path"] == str(Path("/models/t5.gguf"))

    def test_unknown_component_rejected(self, sd_engine):
        with pytest.raises(ValueError, match="Unsupported model component"):
            sd_engine.load(_request(mystery="x"))

    def test_run_without_model(self, sd_engine, tmp_path):
        with pytest.raises(EngineExecutionError, match="No model loaded"):
            sd_engine.run(JobType.TXT2IMG, {"prompt": "x"}, tmp_path, lambda s, t: None)


class TestRun:
    """Tests for generation, previews and artifacts."""

    def test_txt2img_progress_and_previews(self, sd_engine, tmp_path):
        sd_engine.load(_request())
        progress = []
        previews = []
        settings = PreviewSettings(mode=PreviewMode.PROJ, interval=2, max_size=32, quality=50)

        paths = sd_engine.run(
            JobType.TXT2IMG,
            {"prompt": "a fox", "steps": 4, "width": 64, "height": 64, "unknown_flag": True},
            tmp_path / "out",
            lambda step, total: progress.append((step, total)),
            preview_callback=lambda *args: previews.append(args),
            preview_settings=settings,
            stop_flag=threading.Event(),
        )

        assert [p.name for p in paths] == ["image_000.png"]
        assert progress == [(1, 4), (2, 4), (3, 4), (4, 4)]
        assert [p[0] for p in previews] == [2, 4]
        step, data, width, height, frames, noisy = previews[0]
        assert (width, height, frames, noisy) == (32, 32, 1, False)
        assert data[:2] == b"\xff\xd8"
        ctx = FakeStableDiffusion.instances[0]
        assert ctx.calls[0] == ("generate_image", "a fox", 4, False, "proj")

    def test_img2img_loads_init_image(self, sd_engine, tmp_path):
        Image.new("RGB", (8, 8)).save(tmp_path / "init.png")
        sd_engine.load(_request())
        sd_engine.run(
            JobType.IMG2IMG,
            {"prompt": "x", "init_image": "init.png", "steps": 1},
            tmp_path / "out",
            lambda s, t: None,
        )
        assert FakeStableDiffusion.instances[0].calls[0][3] is True

    def test_txt2vid_writes_animation(self, sd_engine, tmp_path):
        sd_engine.load(_request())
        paths = sd_engine.run(
            JobType.TXT2VID,
            {"prompt": "waves", "video_frames": 3, "fps": 8},
            tmp_path / "out",
            lambda s, t: None,
        )
        assert [p.name for p in paths] == ["video.webp"]
        assert paths[0].exists()

    def test_upscale(self, sd_engine, tmp_path):
        sd_engine.load(_request())
        sd_engine.load_upscaler(Path("/models/esrgan.pth"))
        paths = sd_engine.run(
            JobType.TXT2IMG,
            {"prompt": "x", "steps": 1, "width": 8, "height": 8, "upscale_factor": 2},
            tmp_path / "out",
            lambda s, t: None,
        )
        assert [p.name for p in paths] == ["upscaled_000.png"]
        with Image.open(paths[0]) as img:
            assert img.size == (16, 16)

    def test_unload(self, sd_engine, tmp_path):
        sd_engine.load(_request())
        sd_engine.unload()
        with pytest.raises(EngineExecutionError):
            sd_engine.run(JobType.TXT2IMG, {"prompt": "x"}, tmp_path, lambda s, t: None)
