"""
Unit tests for logging, timing, diagnostics and device selection.
"""

import sys
import os

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ternary_lm.config import GenerateConfig, ModelConfig
from ternary_lm.device import device_info, get_device, get_memory_usage
from ternary_lm.engine import TernaryCPUEngine
from ternary_lm.loader import DictWeights, build_model
from ternary_lm.quantize import random_ternary_model
from ternary_lm.utils import InferenceLogger, Timer, print_model_summary, set_seed


@pytest.fixture
def model():
    config = ModelConfig(vocab_size=8, dim=16, n_layers=1, n_heads=2, max_seq_len=8)
    return build_model(config, DictWeights(random_ternary_model(config, seed=0)))


class TestInferenceLogger:
    """Tests for the console/file logger."""

    def test_writes_log_file(self, tmp_path, model):
        logger = InferenceLogger(log_dir=str(tmp_path), quiet=True)
        engine = TernaryCPUEngine(model, tokenizer=None, logger=logger)
        logger.log_generation(prompt_tokens=3, generated_tokens=5, elapsed_ms=10.0,
                              stop_reason="completed", prefill_ms=2.0)
        logger.close()

        files = list(tmp_path.glob("generate_*.log"))
        assert len(files) == 1
        text = files[0].read_text()
        assert "[MODEL] vocab 8 | dim 16 | layers 1 | ctx 8" in text
        assert "x smaller" in text
        assert "[GEN] prompt 3 (prefill 2.0 ms) | generated 5" in text
        assert "500.0 tok/s | completed" in text
        assert engine.logger is logger

    def test_quiet_prints_nothing(self, capsys):
        logger = InferenceLogger(quiet=True)
        logger.log_info("hidden")
        assert capsys.readouterr().out == ""

    def test_console(self, capsys):
        InferenceLogger().log_info("hello")
        assert "[INFO] hello" in capsys.readouterr().out


class TestDiagnostics:
    """Tests for the model summary, Timer and seeding."""

    def test_model_summary(self, model, capsys):
        summary = print_model_summary(model)
        assert "blocks.0.attn.q_proj" in summary
        assert "blocks.0.mlp.w_down" in summary
        assert f"{model.ternary_weight_count:,d}" in summary
        assert summary in capsys.readouterr().out

    def test_timer(self):
        with Timer("noop") as t:
            sum(range(1000))
        assert t.elapsed >= 0
        assert t.elapsed_ms == pytest.approx(t.elapsed * 1000)
        assert str(t).startswith("noop:")

    def test_set_seed(self):
        set_seed(11)
        a = torch.rand(3)
        set_seed(11)
        assert torch.equal(a, torch.rand(3))


class TestDevice:
    """Tests for device selection on any machine (CPU is always present)."""

    def test_explicit_cpu(self):
        assert get_device("cpu") == torch.device("cpu")

    def test_auto_detect(self):
        assert get_device().type in ("cuda", "mps", "cpu")

    def test_cpu_info_and_memory(self):
        cpu = torch.device("cpu")
        assert "CPU" in device_info(cpu)
        assert get_memory_usage(cpu) == {"allocated_mb": 0.0, "reserved_mb": 0.0}

    @pytest.mark.skipif(torch.cuda.is_available(), reason="CUDA is present")
    def test_unavailable_cuda(self):
        with pytest.raises(ValueError):
            get_device("cuda")


class TestGenerateConfig:
    """Tests for the front-end settings record."""

    def test_defaults_roundtrip(self):
        config = GenerateConfig(temperature=0.0, seed=3)
        assert GenerateConfig.from_dict(config.to_dict()) == config
        assert config.max_tokens == 200
        assert config.backend == "cpu"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
