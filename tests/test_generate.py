"""
Unit tests for the generation engine.

Tests verify:
  1. Sampling: greedy argmax, seeded determinism, cumulative-sum edge case
  2. The token loop: one callback per token, cursor bookkeeping, stats
  3. Stopping: completed, cancelled via stop(), capacity
  4. Only one generate() at a time
  5. Memory accounting and reported dimensions
  6. The dense device backend agrees with the packed CPU backend
"""

import sys
import os
import asyncio
import json

import torch
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ternary_lm.config import ModelConfig
from ternary_lm.engine import (
    DeviceEngine,
    GenerationState,
    StopReason,
    TernaryCPUEngine,
    create_engine,
    sample_token,
)
from ternary_lm.errors import GenerationInProgressError
from ternary_lm.loader import DictWeights, build_model
from ternary_lm.quantize import random_ternary_model, save_model
from ternary_lm.tokenizer import BPETokenizer


class CharTokenizer:
    """Maps each character to its index in `alphabet`; unknown characters are dropped."""

    def __init__(self, alphabet="_abc"):
        self.alphabet = alphabet

    def encode(self, text):
        return [self.alphabet.index(c) for c in text if c in self.alphabet]

    def decode_token(self, token_id):
        return self.alphabet[token_id]


def make_model(max_seq_len=8, seed=0):
    config = ModelConfig(vocab_size=4, dim=8, n_layers=1, n_heads=2, n_kv_heads=1, max_seq_len=max_seq_len)
    return build_model(config, DictWeights(random_ternary_model(config, seed=seed, std=0.5)))


@pytest.fixture
def engine():
    return TernaryCPUEngine(make_model(), CharTokenizer(), seed=0)


class TestSampling:
    """Tests for sample_token."""

    def test_greedy(self):
        logits = torch.tensor([0.1, 2.0, -1.0, 1.9])
        assert sample_token(logits, 0.0) == 1
        assert sample_token(logits, -1.0) == 1

    def test_one_hot(self):
        logits = torch.tensor([-1e9, -1e9, 0.0, -1e9])
        g = torch.Generator().manual_seed(0)
        for _ in range(10):
            assert sample_token(logits, 1.0, g) == 2

    def test_seeded_determinism(self):
        logits = torch.randn(50)
        a = [sample_token(logits, 1.0, torch.Generator().manual_seed(7)) for _ in range(3)]
        b = [sample_token(logits, 1.0, torch.Generator().manual_seed(7)) for _ in range(3)]
        assert a == b

    def test_first_index_above_draw(self):
        """The draw r picks the first index whose cumulative probability exceeds r."""
        logits = torch.log(torch.tensor([0.25, 0.25, 0.25, 0.25]))
        g = torch.Generator().manual_seed(123)
        r = torch.rand(1, generator=torch.Generator().manual_seed(123)).item()
        expected = int(r // 0.25)
        assert sample_token(logits, 1.0, g) == expected

    def test_in_range(self):
        g = torch.Generator().manual_seed(0)
        logits = torch.randn(10)
        for _ in range(50):
            assert 0 <= sample_token(logits, 2.0, g) < 10


class TestGenerate:
    """Tests for the token loop."""

    def test_completes_max_tokens(self, engine):
        received = []
        text = asyncio.run(engine.generate(
            "a", max_tokens=3,
            on_token=lambda t, s: received.append((t, s.total_tokens)),
        ))
        assert [n for _, n in received] == [1, 2, 3]
        assert text == "".join(t for t, _ in received)
        assert len(text) == 3
        # 1 prompt position + every sampled token fed back
        assert engine.cache.seq_len == 4
        assert engine.state == GenerationState.COMPLETED
        assert engine.stop_reason == StopReason.COMPLETED

    def test_stats(self, engine):
        stats = []
        asyncio.run(engine.generate("ab", max_tokens=2, on_token=lambda t, s: stats.append(s)))
        assert all(s.elapsed_ms >= 0 for s in stats)
        assert stats[1].elapsed_ms >= stats[0].elapsed_ms
        assert all(s.tokens_per_second >= 0 for s in stats)

    def test_stop_in_callback(self, engine):
        received = []

        def on_token(text, stats):
            received.append(text)
            engine.stop()

        text = asyncio.run(engine.generate("a", max_tokens=5, on_token=on_token))
        assert len(received) == 1
        assert text == received[0]
        assert engine.state == GenerationState.STOPPED
        assert engine.stop_reason == StopReason.CANCELLED

    def test_stop_from_another_task(self, engine):
        received = []

        async def main():
            task = asyncio.ensure_future(engine.generate(
                "a", max_tokens=6, on_token=lambda t, s: received.append(t),
            ))
            # Let exactly one token through, then cancel
            await asyncio.sleep(0)
            engine.stop()
            return await task

        asyncio.run(main())
        assert 1 <= len(received) < 6
        assert engine.stop_reason == StopReason.CANCELLED

    def test_capacity(self):
        engine = TernaryCPUEngine(make_model(max_seq_len=2), CharTokenizer(), seed=0)
        received = []
        asyncio.run(engine.generate("a", max_tokens=10, on_token=lambda t, s: received.append(t)))
        assert len(received) == 1
        assert engine.state == GenerationState.STOPPED
        assert engine.stop_reason == StopReason.CAPACITY

    def test_capacity_never_overflows(self):
        engine = TernaryCPUEngine(make_model(max_seq_len=6), CharTokenizer(), seed=0)
        received = []
        asyncio.run(engine.generate("ab", max_tokens=100, on_token=lambda t, s: received.append(t)))
        assert engine.cache.seq_len <= 5
        assert engine.stop_reason == StopReason.CAPACITY
        assert len(received) == 4

    def test_greedy_is_deterministic(self):
        a = TernaryCPUEngine(make_model(), CharTokenizer(), seed=1).generate_sync("abc", 4, temperature=0)
        b = TernaryCPUEngine(make_model(), CharTokenizer(), seed=2).generate_sync("abc", 4, temperature=0)
        assert a == b

    def test_seeded_sampling_is_reproducible(self):
        a = TernaryCPUEngine(make_model(), CharTokenizer(), seed=5).generate_sync("ab", 4, temperature=1.0)
        b = TernaryCPUEngine(make_model(), CharTokenizer(), seed=5).generate_sync("ab", 4, temperature=1.0)
        assert a == b

    def test_empty_prompt(self, engine):
        with pytest.raises(ValueError):
            engine.generate_sync("xyz", 3)
        assert engine.state == GenerationState.IDLE
        # The engine is usable afterwards
        assert len(engine.generate_sync("a", 1)) == 1

    def test_long_prompt_truncated(self, engine):
        text = engine.generate_sync("abcabcabcabc", 1)
        assert len(text) == 1
        assert engine.stop_reason == StopReason.CAPACITY

    def test_concurrent_generate_rejected(self, engine):
        async def main():
            return await asyncio.gather(
                engine.generate("a", max_tokens=3),
                engine.generate("b", max_tokens=3),
                return_exceptions=True,
            )

        first, second = asyncio.run(main())
        assert isinstance(first, str) and len(first) == 3
        assert isinstance(second, GenerationInProgressError)

    def test_reuse_after_completion(self, engine):
        engine.generate_sync("a", 2)
        engine.generate_sync("ab", 2)
        assert engine.cache.seq_len == 4
        engine.reset_cache()
        assert engine.cache.seq_len == 0


class TestIntrospection:
    """Tests for memory stats and reported config."""

    def test_memory_stats(self, engine):
        model = engine.model
        stats = engine.get_memory_stats()
        ternary = model.ternary_weight_count
        packed_kb = ternary * 0.25 / 1024
        scales_kb = model.scale_count * 4 / 1024
        fp16_kb = model.float_weight_count * 2 / 1024

        assert stats.scales_kb == pytest.approx(scales_kb)
        assert stats.packed_weights_kb == pytest.approx(packed_kb + scales_kb)
        assert stats.fp16_equivalent_kb == pytest.approx(ternary * 2 / 1024 + fp16_kb)
        assert stats.compression_ratio == pytest.approx(
            stats.fp16_equivalent_kb / (packed_kb + scales_kb + fp16_kb)
        )
        assert stats.compression_ratio > 1.0

    def test_get_config(self, engine):
        info = engine.get_config()
        assert info.to_dict() == {"vocab_size": 4, "hidden_dim": 8, "context_length": 8, "n_layers": 1}


class TestBackends:
    """Tests for backend selection and agreement."""

    def test_device_engine_matches_cpu(self):
        cpu = TernaryCPUEngine(make_model(), CharTokenizer(), seed=3)
        dense = DeviceEngine(make_model(), CharTokenizer(), seed=3, device="cpu")
        assert dense.backend == "device"
        assert all(layer.is_materialized for _, layer in dense.model.named_ternary_layers())
        assert cpu.generate_sync("abc", 4, temperature=0) == dense.generate_sync("abc", 4, temperature=0)

    def test_create_engine_from_directory(self, tmp_path):
        config = ModelConfig(vocab_size=4, dim=8, n_layers=1, n_heads=2, n_kv_heads=1, max_seq_len=8)
        save_model(str(tmp_path), config, random_ternary_model(config, seed=0))
        vocab = {"<unk>": 0, "a": 1, "b": 2, "Ġa": 3}
        with open(tmp_path / "tokenizer.json", "w", encoding="utf-8") as f:
            json.dump({"model": {"type": "BPE", "vocab": vocab, "merges": []}}, f)

        engine = create_engine(str(tmp_path), backend="cpu", seed=0)
        assert isinstance(engine, TernaryCPUEngine)
        assert isinstance(engine.tokenizer, BPETokenizer)
        assert isinstance(engine.generate_sync("a b", 2), str)
        assert engine.stop_reason == StopReason.COMPLETED

    def test_unknown_backend(self, tmp_path):
        with pytest.raises(ValueError):
            create_engine(str(tmp_path), backend="tpu")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
