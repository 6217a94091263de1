"""
Float → ternary conversion and model export.

The inference engine only ever reads packed weights. This module is the
other side of that contract: it turns a float weight matrix into codes
and scales, builds whole random models for tests and demos, and writes
a model directory that loader.load_model() can read back.

ABSMEAN QUANTIZATION (BitNet b1.58 style, one scale per output row):
  scale[n]   = mean_k |W[n, k]|
  code[n, k] = clamp( round(W[n, k] / scale[n]), -1, +1 )

  Weights much smaller than the row's average magnitude round to 0, the
  rest keep only their sign. code × scale is the ternary approximation
  of W.
"""

import os
from typing import Dict, Optional

import torch
from safetensors.torch import save_file

from ternary_lm.config import ModelConfig
from ternary_lm.loader import CONFIG_FILENAME, WEIGHTS_FILENAME
from ternary_lm.ternary import TernaryLayer, pack_ternary


def quantize_ternary(weight: torch.Tensor, eps: float = 1e-8, name: str = "") -> TernaryLayer:
    """
    Quantize a float matrix of shape (out_features, in_features).

    Args:
        weight: Dense weights.
        eps: Lower bound on a row's scale (an all-zero row stays all zero).
        name: Tensor prefix recorded on the layer.

    Returns:
        A TernaryLayer whose decode() approximates `weight`.
    """
    if weight.dim() != 2:
        raise ValueError(f"expected a 2-D weight matrix, got shape {tuple(weight.shape)}")
    w = weight.detach().to(torch.float32)
    scales = w.abs().mean(dim=1).clamp(min=eps)
    codes = torch.clamp(torch.round(w / scales.unsqueeze(1)), -1, 1).to(torch.int8)
    return TernaryLayer(pack_ternary(codes), scales, in_features=w.shape[1], name=name)


def default_hidden_dim(dim: int) -> int:
    """SwiGLU hidden width ≈ (8/3)·dim, rounded up to a multiple of 4."""
    hidden = int(8 * dim / 3)
    return 4 * ((hidden + 3) // 4)


def random_ternary_model(
    config: ModelConfig,
    hidden_dim: Optional[int] = None,
    seed: int = 0,
    std: float = 0.02,
) -> Dict[str, torch.Tensor]:
    """
    Tensors for a randomly initialized model, already in file format.

    Float tensors are drawn from Normal(0, std) (norm gains are ones);
    every ternary projection is a Normal(0, std) matrix run through
    quantize_ternary().

    Args:
        config: Architecture to build.
        hidden_dim: FFN width. Defaults to default_hidden_dim(config.dim).
        seed: Seed for a private torch.Generator; global RNG is untouched.
        std: Standard deviation of the underlying float weights.

    Returns:
        Dict of tensor name → tensor, ready for build_model(DictWeights(...))
        or save_model().
    """
    config.validate()
    generator = torch.Generator().manual_seed(seed)
    hidden = hidden_dim or default_hidden_dim(config.dim)
    dim = config.dim

    def normal(*shape):
        return torch.randn(*shape, generator=generator) * std

    tensors: Dict[str, torch.Tensor] = {
        "tok.weight": normal(config.vocab_size, dim),
        "head.weight": normal(config.vocab_size, dim),
        "norm.weight": torch.ones(dim),
    }

    projections = (
        ("attn.q_proj", config.n_heads * config.head_dim, dim),
        ("attn.kv_proj", 2 * config.kv_dim, dim),
        ("attn.proj", dim, config.n_heads * config.head_dim),
        ("mlp.w_gate", hidden, dim),
        ("mlp.w_up", hidden, dim),
        ("mlp.w_down", dim, hidden),
    )
    for i in range(config.n_layers):
        prefix = f"blocks.{i}"
        tensors[f"{prefix}.norm1.weight"] = torch.ones(dim)
        tensors[f"{prefix}.norm2.weight"] = torch.ones(dim)
        for name, out_features, in_features in projections:
            layer = quantize_ternary(normal(out_features, in_features))
            tensors[f"{prefix}.{name}.weight_packed"] = layer.packed
            tensors[f"{prefix}.{name}.scale"] = layer.scales

    return tensors


def save_model(
    base_path: str,
    config: ModelConfig,
    tensors: Dict[str, torch.Tensor],
    metadata: Optional[Dict[str, str]] = None,
) -> None:
    """
    Write config.json and model.safetensors into base_path.

    The tokenizer is not written here; put a tokenizer.json (or
    tokenizer.model) next to the two files.
    """
    os.makedirs(base_path, exist_ok=True)
    config.save(os.path.join(base_path, CONFIG_FILENAME))
    save_file(
        {name: t.contiguous() for name, t in tensors.items()},
        os.path.join(base_path, WEIGHTS_FILENAME),
        metadata=metadata,
    )
