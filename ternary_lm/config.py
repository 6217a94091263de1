"""
Configuration for the ternary transformer and the generation front-end.

This module is the SINGLE SOURCE OF TRUTH for model hyperparameters. The
weights file only carries tensors; everything needed to interpret them
(how many heads, how wide the model is, how long the context window is)
comes from config.json and is parsed here.

We use Python dataclasses for configuration because:
  1. Type safety: IDE can catch typos and type mismatches.
  2. Serialization: Easy to save/load with dataclasses.asdict().
  3. Validation: one place to reject a bad config BEFORE any tensor is
     touched, instead of a cryptic shape error deep inside attention.

ARCHITECTURE OVERVIEW:
  The model is a LLaMA-style decoder whose linear layers are ternary:
  - Decoder-only transformer (no encoder, no cross-attention)
  - Pre-normalization with RMSNorm
  - Rotary Positional Embeddings (half-split pairing)
  - SwiGLU feed-forward
  - Grouped Query Attention with a single fused key+value projection
  - Every projection inside a block stores weights in {-1, 0, +1},
    packed 4 per byte, with one float scale per output channel
  - Embedding and output head stay in floating point

config.json FORMAT:
  {
    "vocab_size": 256,
    "dim": 128,
    "n_layers": 4,
    "n_heads": 4,
    "n_kv_heads": 2,        ← optional, defaults to n_heads (plain MHA)
    "max_seq_len": 256
  }
"""

from dataclasses import dataclass, asdict, fields
from typing import Optional
import json
import os

from ternary_lm.errors import ConfigError


# Keys that must be present in config.json. n_kv_heads is optional.
REQUIRED_FIELDS = ("vocab_size", "dim", "n_layers", "n_heads", "max_seq_len")


@dataclass
class ModelConfig:
    """
    Architecture hyperparameters for the ternary transformer.

    These parameters define how the packed tensors in the weights file are
    interpreted. Loading weights with a config that disagrees with them is
    caught at load time (ShapeError), not at generation time.

    KV CACHE SIZE (per block, float32):
      2 × n_kv_heads × max_seq_len × head_dim × 4 bytes
      e.g. n_kv_heads=2, max_seq_len=256, head_dim=32 → 128 KB per block
    """

    # ── Vocabulary ──────────────────────────────────────────────────────────
    # Rows of the embedding table and of the output head.
    vocab_size: int = 256

    # ── Model Dimensions ───────────────────────────────────────────────────
    # Width of the residual stream. Every token is a vector of this size
    # between blocks.
    dim: int = 128

    # ── Depth ──────────────────────────────────────────────────────────────
    n_layers: int = 4

    # ── Attention Heads ────────────────────────────────────────────────────
    # n_heads: number of QUERY heads. head_dim = dim / n_heads.
    n_heads: int = 4

    # n_kv_heads: number of KEY/VALUE heads (Grouped Query Attention).
    #   - None or n_heads: standard Multi-Head Attention (MHA)
    #   - 1: Multi-Query Attention (every query head shares one K,V)
    #   - in between: GQA, each KV head serves n_heads/n_kv_heads queries
    n_kv_heads: Optional[int] = None

    # ── Sequence Length ────────────────────────────────────────────────────
    # Capacity of the rotary table and of the KV cache. Generation stops
    # gracefully one position before this limit.
    max_seq_len: int = 256

    # ── Fixed numerical constants ──────────────────────────────────────────
    # Not read from config.json: the exported models are trained with
    # exactly these values.
    norm_eps: float = 1e-5
    rope_theta: float = 10000.0

    def __post_init__(self):
        if self.n_kv_heads is None:
            self.n_kv_heads = self.n_heads

    @property
    def head_dim(self) -> int:
        """Dimension of each attention head (dim / n_heads)."""
        return self.dim // self.n_heads

    @property
    def n_kv_groups(self) -> int:
        """
        Number of query heads per KV head group.

        With n_heads=4, n_kv_heads=2: each KV head serves 2 query heads.
        """
        return self.n_heads // self.n_kv_heads

    @property
    def kv_dim(self) -> int:
        """Width of the key half (and of the value half) of kv_proj's output."""
        return self.n_kv_heads * self.head_dim

    def validate(self) -> None:
        """
        Validate configuration constraints.

        Raises:
            ConfigError: on the first violated constraint.
        """
        for name in ("vocab_size", "dim", "n_layers", "n_heads", "n_kv_heads", "max_seq_len"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{name} must be an integer, got {value!r}")
            if value <= 0:
                raise ConfigError(f"{name} must be positive, got {value}")
        if self.n_kv_heads > self.n_heads:
            raise ConfigError(
                f"n_kv_heads ({self.n_kv_heads}) cannot exceed n_heads ({self.n_heads})"
            )
        if self.dim % self.n_heads != 0:
            raise ConfigError(
                f"dim ({self.dim}) must be divisible by n_heads ({self.n_heads})"
            )
        if self.n_heads % self.n_kv_heads != 0:
            raise ConfigError(
                f"n_heads ({self.n_heads}) must be divisible by n_kv_heads ({self.n_kv_heads})"
            )
        if self.head_dim % 2 != 0:
            raise ConfigError(
                f"head_dim ({self.head_dim}) must be even for RoPE rotation pairs"
            )

    def to_dict(self) -> dict:
        """Convert to the config.json dictionary (fixed constants excluded)."""
        d = asdict(self)
        d.pop("norm_eps")
        d.pop("rope_theta")
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "ModelConfig":
        """
        Build and validate a config from a config.json dictionary.

        Unknown keys (e.g. training metadata written by the exporter) are
        ignored. n_kv_heads may be absent or null.

        Raises:
            ConfigError: if a required field is missing or a value is invalid.
        """
        missing = [k for k in REQUIRED_FIELDS if k not in d or d[k] is None]
        if missing:
            raise ConfigError(f"config is missing required field(s): {', '.join(missing)}")
        known = {f.name for f in fields(cls)} - {"norm_eps", "rope_theta"}
        config = cls(**{k: v for k, v in d.items() if k in known})
        config.validate()
        return config

    def save(self, path: str) -> None:
        """Save configuration to JSON file."""
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        with open(path, "w") as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def load(cls, path: str) -> "ModelConfig":
        """Load configuration from JSON file."""
        with open(path, "r") as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as e:
                raise ConfigError(f"{path} is not valid JSON: {e}") from e
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a JSON object")
        return cls.from_dict(data)


@dataclass
class GenerateConfig:
    """
    Generation front-end settings.

    These control HOW text is produced, not what the model is. They can be
    changed freely between generate() calls on the same engine.
    """

    # ── Length ─────────────────────────────────────────────────────────────
    # Upper bound on sampled tokens. The engine may stop earlier when the
    # KV cache reaches max_seq_len - 1 or when stop() is called.
    max_tokens: int = 200

    # ── Sampling ───────────────────────────────────────────────────────────
    # logits / temperature before softmax.
    #   < 1.0: sharper → more deterministic
    #   > 1.0: flatter → more random
    #   <= 0 : greedy (argmax), no randomness at all
    temperature: float = 0.8

    # ── Reproducibility ────────────────────────────────────────────────────
    # Seed for the engine's sampling generator. None = nondeterministic.
    seed: Optional[int] = None

    # ── Backend ────────────────────────────────────────────────────────────
    # "cpu":    packed weights, decoded on demand inside every matmul
    # "device": weights decoded once to dense floats on the best device
    backend: str = "cpu"

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "GenerateConfig":
        """Reconstruct from dictionary."""
        return cls(**d)
