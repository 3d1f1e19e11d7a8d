"""Tests for model discovery."""

from __future__ import annotations

import pytest

from sdqueue.backend.config import ModelPaths
from sdqueue.backend.models.model_descriptor import ModelCategory, ModelFilter
from sdqueue.backend.services.model_registry import ModelRegistry, detect_architecture


class TestDetectArchitecture:
    @pytest.mark.parametrize(
        "name, category, expected",
        [
            ("flux1-dev-Q4_0.gguf", ModelCategory.DIFFUSION, "Flux"),
            ("sd3_medium.safetensors", ModelCategory.DIFFUSION, "SD3"),
            ("juggernautXL_v9.safetensors", ModelCategory.CHECKPOINT, "SDXL"),
            ("wan2.1_t2v_1.3B.gguf", ModelCategory.DIFFUSION, "Wan"),
            ("v2-1_768-ema-pruned.safetensors", ModelCategory.CHECKPOINT, "SD2.x"),
            ("dreamshaper_8.safetensors", ModelCategory.CHECKPOINT, "SD1.x"),
            ("mystery.gguf", ModelCategory.DIFFUSION, ""),
        ],
    )
    def test_hints(self, name, category, expected):
        assert detect_architecture(name, category) == expected


class TestModelRegistry:
    """Tests for scan, lookup and API serialization."""

    def test_scan_counts_model_files_only(self, models_root):
        registry = ModelRegistry(ModelPaths.from_root(models_root))
        assert registry.scan() == 6
        assert registry.last_scan is not None
        names = [m.name for m in registry.get_models(ModelCategory.CHECKPOINT)]
        assert names == ["modelA.safetensors", "modelB.safetensors"]

    def test_catalog_grouped_by_category(self, registry):
        catalog = registry.get_models()
        assert set(catalog) == set(ModelCategory)
        assert [m.name for m in catalog[ModelCategory.DIFFUSION]] == ["flux1-dev.gguf"]
        assert catalog[ModelCategory.CLIP] == []

    def test_missing_directories_are_empty(self, tmp_path):
        registry = ModelRegistry(ModelPaths.from_root(tmp_path / "nowhere"))
        assert registry.scan() == 0
        assert registry.get_models(ModelCategory.VAE) == []

    def test_nested_names_are_relative(self, models_root):
        nested = models_root / "loras" / "styles" / "ink.safetensors"
        nested.parent.mkdir(parents=True)
        nested.write_bytes(b"0")
        registry = ModelRegistry(ModelPaths.from_root(models_root))
        registry.scan()
        assert registry.get_model("styles/ink.safetensors", ModelCategory.LORA).path == nested

    def test_rescan_replaces_catalog(self, registry, models_root):
        (models_root / "checkpoints" / "modelA.safetensors").unlink()
        (models_root / "checkpoints" / "modelC.gguf").write_bytes(b"0")
        registry.scan()
        names = [m.name for m in registry.get_models(ModelCategory.CHECKPOINT)]
        assert names == ["modelB.safetensors", "modelC.gguf"]

    def test_get_model_without_extension(self, registry):
        assert registry.get_model("modelA", ModelCategory.CHECKPOINT).name == "modelA.safetensors"
        assert registry.get_model("modelA", ModelCategory.VAE) is None

    def test_find_main_model(self, registry):
        assert registry.find_main_model("modelB").category is ModelCategory.CHECKPOINT
        assert registry.find_main_model("flux1-dev").category is ModelCategory.DIFFUSION
        assert registry.find_main_model("ae") is None

    def test_list_models_with_filter(self, registry):
        gguf = registry.list_models(ModelFilter(extension=".GGUF"))
        assert [m.name for m in gguf] == ["flux1-dev.gguf"]
        searched = registry.list_models(ModelFilter(search="MODEL"))
        assert {m.name for m in searched} == {"modelA.safetensors", "modelB.safetensors"}

    def test_to_api_response(self, registry):
        response = registry.to_api_response(loaded=("modelB.safetensors", ModelCategory.CHECKPOINT))
        checkpoints = {entry["name"]: entry for entry in response["checkpoints"]}
        assert checkpoints["modelB.safetensors"]["is_loaded"] is True
        assert checkpoints["modelA.safetensors"]["is_loaded"] is False
        assert checkpoints["modelA.safetensors"]["file_extension"] == "safetensors"
        assert checkpoints["modelA.safetensors"]["size_bytes"] == 16
        assert "is_loaded" not in response["vae"][0]
        assert response["loaded_model"] == "modelB.safetensors"
        assert response["loaded_model_type"] == "checkpoint"
        assert "applied_filters" not in response

    def test_to_api_response_with_filter(self, registry):
        response = registry.to_api_response(ModelFilter(category=ModelCategory.ESRGAN))
        assert [e["name"] for e in response["esrgan"]] == ["RealESRGAN_x4.pth"]
        assert response["checkpoints"] == []
        assert response["applied_filters"] == {"type": "esrgan"}
        assert response["loaded_model"] is None
