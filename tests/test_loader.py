"""
Unit tests for loading a model directory.

Tests verify:
  1. save_model → load_model reproduces the same logits
  2. Missing tensors raise KeyError naming the tensor
  3. Shape disagreements with config.json raise ShapeError
  4. F16 tensors are widened, I8 packed bytes are reinterpreted as U8
  5. Invalid config.json raises ConfigError
"""

import sys
import os
import json

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ternary_lm.config import ModelConfig
from ternary_lm.errors import ConfigError, ShapeError
from ternary_lm.loader import (
    CONFIG_FILENAME,
    DictWeights,
    SafeTensorsWeights,
    WEIGHTS_FILENAME,
    build_model,
    load_model,
)
from ternary_lm.quantize import random_ternary_model, save_model


@pytest.fixture
def config():
    return ModelConfig(vocab_size=16, dim=16, n_layers=2, n_heads=2, n_kv_heads=1, max_seq_len=8)


@pytest.fixture
def tensors(config):
    return random_ternary_model(config, seed=3, std=0.5)


class TestSafeTensorsRoundTrip:
    """Tests for the on-disk format."""

    def test_files_written(self, tmp_path, config, tensors):
        save_model(str(tmp_path), config, tensors)
        assert (tmp_path / CONFIG_FILENAME).exists()
        assert (tmp_path / WEIGHTS_FILENAME).exists()
        with open(tmp_path / CONFIG_FILENAME) as f:
            saved = json.load(f)
        assert saved["n_kv_heads"] == 1
        assert "norm_eps" not in saved

    def test_same_logits(self, tmp_path, config, tensors):
        save_model(str(tmp_path), config, tensors)
        loaded = load_model(str(tmp_path))
        in_memory = build_model(config, DictWeights(tensors))

        tokens = [1, 5, 9]
        a = loaded.forward_prefill(tokens, loaded.new_cache())
        b = in_memory.forward_prefill(tokens, in_memory.new_cache())
        assert torch.equal(a, b)

    def test_metadata(self, tmp_path, config, tensors):
        save_model(str(tmp_path), config, tensors, metadata={"source": "test"})
        source = SafeTensorsWeights(str(tmp_path / WEIGHTS_FILENAME))
        assert source.metadata["source"] == "test"
        assert "tok.weight" in source.names()

    def test_packed_dtype_preserved(self, tmp_path, config, tensors):
        save_model(str(tmp_path), config, tensors)
        source = SafeTensorsWeights(str(tmp_path / WEIGHTS_FILENAME))
        assert source.get("blocks.0.attn.q_proj.weight_packed").dtype == torch.uint8

    def test_missing_weights_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            SafeTensorsWeights(str(tmp_path / "nope.safetensors"))


class TestValidation:
    """Tests for load-time checks."""

    def test_missing_tensor(self, config, tensors):
        del tensors["blocks.1.mlp.w_up.scale"]
        with pytest.raises(KeyError, match="blocks.1.mlp.w_up.scale"):
            build_model(config, DictWeights(tensors))

    def test_wrong_embedding_shape(self, config, tensors):
        tensors["tok.weight"] = torch.zeros(15, 16)
        with pytest.raises(ShapeError, match="tok.weight"):
            build_model(config, DictWeights(tensors))

    def test_wrong_packed_width(self, config, tensors):
        tensors["blocks.0.attn.q_proj.weight_packed"] = torch.zeros(16, 3, dtype=torch.uint8)
        with pytest.raises(ShapeError):
            build_model(config, DictWeights(tensors))

    def test_wrong_kv_rows(self, config, tensors):
        """kv_proj must have 2 × kv_dim output rows."""
        tensors["blocks.0.attn.kv_proj.weight_packed"] = torch.zeros(8, 4, dtype=torch.uint8)
        tensors["blocks.0.attn.kv_proj.scale"] = torch.ones(8)
        with pytest.raises(ShapeError):
            build_model(config, DictWeights(tensors))

    def test_scale_count_mismatch(self, config, tensors):
        tensors["blocks.0.attn.proj.scale"] = torch.ones(15)
        with pytest.raises(ShapeError):
            build_model(config, DictWeights(tensors))

    def test_config_disagrees_with_weights(self, config, tensors):
        wrong = ModelConfig(vocab_size=16, dim=16, n_layers=2, n_heads=2, n_kv_heads=2, max_seq_len=8)
        with pytest.raises(ShapeError):
            build_model(wrong, DictWeights(tensors))

    def test_invalid_config(self, tmp_path, config, tensors):
        save_model(str(tmp_path), config, tensors)
        with open(tmp_path / CONFIG_FILENAME, "w") as f:
            json.dump({"vocab_size": 16, "dim": 16, "n_layers": 2, "n_heads": 3, "max_seq_len": 8}, f)
        with pytest.raises(ConfigError):
            load_model(str(tmp_path))

    def test_malformed_config_json(self, tmp_path, config, tensors):
        save_model(str(tmp_path), config, tensors)
        (tmp_path / CONFIG_FILENAME).write_text("{not json")
        with pytest.raises(ConfigError):
            load_model(str(tmp_path))


class TestDtypes:
    """Tests for dtype normalization."""

    def test_f16_upcast(self, config, tensors):
        half = {k: (v.half() if v.is_floating_point() else v) for k, v in tensors.items()}
        model = build_model(config, DictWeights(half))
        assert model.embedding.dtype == torch.float32
        assert model.blocks[0].q_proj.scales.dtype == torch.float32

    def test_int8_packed_bytes(self, config, tensors):
        as_int8 = {
            k: (v.view(torch.int8) if k.endswith("weight_packed") else v)
            for k, v in tensors.items()
        }
        a = build_model(config, DictWeights(as_int8))
        b = build_model(config, DictWeights(tensors))
        assert torch.equal(a.blocks[0].w_up.codes(), b.blocks[0].w_up.codes())


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
