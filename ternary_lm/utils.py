"""
Utility functions for the ternary inference pipeline.

This module contains cross-cutting concerns that don't belong in any
specific component: reproducibility (seeding), diagnostics (a model
summary with packed sizes and weight sparsity), timing, and logging.

Log lines go to stdout and, optionally, to a timestamped log file.
"""

import os
import time
import random
from typing import Optional
from datetime import datetime

import numpy as np
import torch


# ═══════════════════════════════════════════════════════════════════════════
# REPRODUCIBILITY
# ═══════════════════════════════════════════════════════════════════════════

def set_seed(seed: int) -> None:
    """
    Seed Python, NumPy and PyTorch random number generators.

    The engine samples from its own torch.Generator (seeded separately via
    the engine's `seed` argument), so this only matters for code that uses
    the global generators, e.g. random_ternary_model() without a seed or
    ad-hoc experiments in scripts.

    Args:
        seed: The random seed value. Use the same seed for reproducible runs.
    """
    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed_all(seed)


# ═══════════════════════════════════════════════════════════════════════════
# MODEL DIAGNOSTICS
# ═══════════════════════════════════════════════════════════════════════════

def print_model_summary(model) -> str:
    """
    Print a per-tensor breakdown of a TernaryModel.

    Example output:
      =================================================================
      Ternary Model Summary
      =================================================================
      Name                                  Weights   Packed KB  Zero %
      -----------------------------------------------------------------
        tok.weight (f32)                     32,768       128.0
        blocks.0.attn.q_proj                 16,384         4.5    33.1
        ...
      -----------------------------------------------------------------
        Ternary weights                     344,064
        Float weights                        65,536
      =================================================================

    Returns:
        The summary as a string (also printed to stdout).
    """
    lines = []
    lines.append("=" * 65)
    lines.append("Ternary Model Summary")
    lines.append("=" * 65)
    lines.append(f"{'Name':<34} {'Weights':>12} {'Packed KB':>10} {'Zero %':>6}")
    lines.append("-" * 65)

    for name, tensor in (("tok.weight", model.embedding), ("head.weight", model.head)):
        n = tensor.numel()
        lines.append(f"  {name + ' (f32)':<32} {n:>12,d} {n * 4 / 1024:>10.1f}")

    for name, layer in model.named_ternary_layers():
        dist = layer.weight_distribution()
        zero_pct = 100.0 * dist["zero"] / dist["total"] if dist["total"] else 0.0
        packed_kb = (layer.packed.numel() + layer.out_features * 4) / 1024
        lines.append(f"  {name:<32} {layer.num_weights:>12,d} {packed_kb:>10.1f} {zero_pct:>6.1f}")

    lines.append("-" * 65)
    lines.append(f"  {'Ternary weights':<32} {model.ternary_weight_count:>12,d}")
    lines.append(f"  {'Float weights':<32} {model.float_weight_count:>12,d}")
    lines.append("=" * 65)

    summary = "\n".join(lines)
    print(summary)
    return summary


# ═══════════════════════════════════════════════════════════════════════════
# TIMING
# ═══════════════════════════════════════════════════════════════════════════

class Timer:
    """
    Simple context manager for timing code blocks.

    Usage:
        with Timer("Prefill") as t:
            logits = model.forward_prefill(tokens, cache)
        print(t)   # "Prefill: 0.0234s"

    On CUDA, kernels run asynchronously, so the device is synchronized
    on entry and exit before reading the clock.
    """

    def __init__(self, name: str = "Block", device: Optional[torch.device] = None):
        self.name = name
        self.device = device
        self.elapsed: float = 0.0

    def __enter__(self):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.start = time.perf_counter()
        return self

    def __exit__(self, *args):
        if self.device is not None and self.device.type == "cuda":
            torch.cuda.synchronize(self.device)
        self.elapsed = time.perf_counter() - self.start

    @property
    def elapsed_ms(self) -> float:
        return self.elapsed * 1000

    def __str__(self):
        return f"{self.name}: {self.elapsed:.4f}s"


# ═══════════════════════════════════════════════════════════════════════════
# INFERENCE LOGGER
# ═══════════════════════════════════════════════════════════════════════════

class InferenceLogger:
    """
    Lightweight logger that writes to console and an optional log file.

    Tracks what matters for inference:
      - Model load: dimensions and packed memory
      - Each generation: prompt length, tokens produced, throughput, and
        why it stopped (completed / cancelled / capacity)

    quiet=True suppresses console output (the file, if any, still gets
    every line). The engine's default logger is quiet so that library use
    prints nothing unless asked to.
    """

    def __init__(self, log_dir: Optional[str] = None, quiet: bool = False):
        """
        Args:
            log_dir: Directory for log files. If None, only console output.
            quiet: If True, do not print to stdout.
        """
        self.quiet = quiet
        self.log_file = None
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_path = os.path.join(log_dir, f"generate_{timestamp}.log")
            self.log_file = open(log_path, "w")
            if not quiet:
                print(f"Logging to: {log_path}")

    def _write(self, msg: str) -> None:
        """Write message to console and optionally to log file."""
        if not self.quiet:
            print(msg)
        if self.log_file:
            self.log_file.write(msg + "\n")
            self.log_file.flush()

    def log_info(self, msg: str) -> None:
        """Log an informational message."""
        self._write(f"[INFO] {msg}")

    def log_model(self, info, memory) -> None:
        """
        Log model dimensions and memory after loading.

        Example output:
          [MODEL] vocab 256 | dim 128 | layers 4 | ctx 256
          [MODEL] packed 84.0 KB | fp16 equiv 784.0 KB | 9.33x smaller
        """
        self._write(
            f"[MODEL] vocab {info.vocab_size} | dim {info.hidden_dim} | "
            f"layers {info.n_layers} | ctx {info.context_length}"
        )
        self._write(
            f"[MODEL] packed {memory.packed_weights_kb:.1f} KB | "
            f"fp16 equiv {memory.fp16_equivalent_kb:.1f} KB | "
            f"{memory.compression_ratio:.2f}x smaller"
        )

    def log_generation(
        self,
        prompt_tokens: int,
        generated_tokens: int,
        elapsed_ms: float,
        stop_reason: str,
        prefill_ms: Optional[float] = None,
    ) -> None:
        """
        Log one finished generate() call.

        Example output:
          [GEN] prompt 5 (prefill 4.1 ms) | generated 48 | 312.4 ms | 153.6 tok/s | completed
        """
        tok_per_sec = generated_tokens / (elapsed_ms / 1000) if elapsed_ms > 0 else 0.0
        prefill = f" (prefill {prefill_ms:.1f} ms)" if prefill_ms is not None else ""
        self._write(
            f"[GEN] prompt {prompt_tokens}{prefill} | generated {generated_tokens} | "
            f"{elapsed_ms:.1f} ms | {tok_per_sec:.1f} tok/s | {stop_reason}"
        )

    def close(self) -> None:
        """Close the log file if open."""
        if self.log_file:
            self.log_file.close()
            self.log_file = None
