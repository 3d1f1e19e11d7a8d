"""Tests for the loaded-model guard."""

from __future__ import annotations

import threading
import time

import pytest

from sdqueue.backend.models.event import EventKind
from sdqueue.backend.models.model_descriptor import ModelCategory
from sdqueue.backend.services.model_guard import components_from_settings
from sdqueue.backend.utils.exceptions import ModelLoadError


class TestEnsureLoaded:
    """Tests for load/swap semantics."""

    def test_swap_unloads_then_loads(self, guard, engine):
        guard.load("modelA")
        guard.load("modelB")
        assert engine.calls == [
            ("load", "modelA.safetensors"),
            ("unload",),
            ("load", "modelB.safetensors"),
        ]
        assert guard.loaded_model.name == "modelB.safetensors"

    def test_resident_model_is_reused(self, guard, engine):
        guard.load("modelA")
        with guard.ensure_loaded("modelA.safetensors") as token:
            assert token.model.name == "modelA.safetensors"
        assert engine.calls == [("load", "modelA.safetensors")]

    def test_changed_components_reload(self, guard, engine):
        guard.load("flux1-dev")
        guard.load("flux1-dev", components={"vae_model": "ae"})
        assert [c[0] for c in engine.calls] == ["load", "unload", "load"]
        request = engine.requests[-1]
        assert request.components["vae"].name == "ae.safetensors"
        assert request.category is ModelCategory.DIFFUSION
        assert request.architecture == "Flux"

    def test_explicit_architecture_wins(self, guard, engine):
        guard.load("modelA", architecture="SDXL")
        assert engine.requests[-1].architecture == "SDXL"

    def test_no_name_uses_resident_model(self, guard):
        guard.load("modelA")
        with guard.ensure_loaded() as token:
            assert token.model.name == "modelA.safetensors"

    def test_no_name_and_nothing_loaded(self, guard):
        with pytest.raises(ModelLoadError, match="No model loaded"):
            with guard.ensure_loaded():
                pass

    def test_unknown_model_keeps_resident(self, guard, engine):
        guard.load("modelA")
        with pytest.raises(ModelLoadError, match="Model not found"):
            guard.load("does-not-exist")
        assert guard.loaded_model.name == "modelA.safetensors"
        assert engine.calls == [("load", "modelA.safetensors")]

    def test_unknown_component(self, guard):
        with pytest.raises(ModelLoadError, match="vae model not found"):
            guard.load("flux1-dev", components={"vae_model": "missing"})

    def test_load_failure_clears_state(self, guard, engine, broadcaster):
        guard.load("modelA")
        events = broadcaster.subscribe()
        engine.load_error = "out of memory"
        with pytest.raises(ModelLoadError, match="out of memory") as exc_info:
            guard.load("modelB")
        assert exc_info.value.model_name == "modelB"
        assert guard.loaded_model is None
        assert guard.info()["last_error"].endswith("out of memory")
        kinds = [e.kind for e in events.drain()]
        assert kinds == [EventKind.MODEL_UNLOADED, EventKind.MODEL_LOAD_FAILED]

    def test_loaded_event(self, guard, broadcaster):
        events = broadcaster.subscribe()
        guard.load("modelA")
        (event,) = events.drain()
        assert event.kind is EventKind.MODEL_LOADED
        assert event.data["model_name"] == "modelA.safetensors"
        assert event.data["model_architecture"] == "SD1.x"

    def test_swap_is_exclusive(self, guard, engine):
        """A pending swap waits until the current holder releases the engine."""
        guard.load("modelA")
        holding = threading.Event()
        release = threading.Event()

        def _hold():
            with guard.ensure_loaded("modelA") as token:
                holding.set()
                release.wait(timeout=5)
                engine.calls.append(("run", "held"))

        holder = threading.Thread(target=_hold)
        holder.start()
        assert holding.wait(timeout=5)

        swapper = threading.Thread(target=guard.load, args=("modelB",))
        swapper.start()
        time.sleep(0.05)
        assert ("load", "modelB.safetensors") not in engine.calls
        assert guard.info()["busy"] is True

        release.set()
        holder.join(timeout=5)
        swapper.join(timeout=5)
        assert engine.calls == [
            ("load", "modelA.safetensors"),
            ("run", "held"),
            ("unload",),
            ("load", "modelB.safetensors"),
        ]


class TestUnload:
    def test_unload_is_idempotent(self, guard, engine):
        guard.load("modelA")
        guard.unload()
        guard.unload()
        assert engine.calls.count(("unload",)) == 1
        assert guard.loaded_model is None
        assert guard.info()["model_loaded"] is False

    def test_unload_without_model(self, guard, engine):
        guard.unload()
        assert engine.calls == []


class TestUpscaler:
    def test_ensure_upscaler(self, guard, engine):
        guard.ensure_upscaler("RealESRGAN_x4")
        guard.ensure_upscaler("RealESRGAN_x4")
        assert engine.calls == [("load_upscaler", "RealESRGAN_x4.pth")]
        assert guard.info()["upscaler"] == "RealESRGAN_x4"

    def test_unknown_upscaler(self, guard):
        with pytest.raises(ModelLoadError, match="Upscaler not found"):
            guard.ensure_upscaler("missing")

    def test_unload_releases_upscaler(self, guard, engine):
        guard.load("modelA")
        guard.ensure_upscaler("RealESRGAN_x4")
        guard.unload()
        assert engine.calls[-2:] == [("unload_upscaler",), ("unload",)]
        assert guard.upscaler is None


def test_components_from_settings():
    settings = {
        "model_name": "flux1-dev",
        "vae_model": "ae",
        "t5xxl_model": "",
        "clip_l_model": None,
        "llm_model": "qwen",
    }
    assert components_from_settings(settings) == {"vae_model": "ae", "llm_model": "qwen"}
