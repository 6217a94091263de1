"""
Weight loading: safetensors file + config.json → TernaryModel.

A model directory looks like:

    my_model/
      ├── config.json          ← ModelConfig (see config.py)
      ├── model.safetensors    ← all tensors, names below
      └── tokenizer.json       ← BPE tokenizer (or tokenizer.model)

TENSOR NAMES:
  tok.weight                                  F32/F16  (vocab_size, dim)
  head.weight                                 F32/F16  (vocab_size, dim)
  norm.weight                                 F32/F16  (dim,)
  blocks.{i}.norm1.weight                     F32/F16  (dim,)
  blocks.{i}.norm2.weight                     F32/F16  (dim,)
  blocks.{i}.attn.q_proj.weight_packed        U8       (dim, dim/4)
  blocks.{i}.attn.kv_proj.weight_packed       U8       (2·kv_dim, dim/4)
  blocks.{i}.attn.proj.weight_packed          U8       (dim, dim/4)
  blocks.{i}.mlp.w_gate.weight_packed         U8       (hidden, dim/4)
  blocks.{i}.mlp.w_up.weight_packed           U8       (hidden, dim/4)
  blocks.{i}.mlp.w_down.weight_packed         U8       (dim, hidden/4)
  <every ternary prefix>.scale                F32/F16  (out_features,)

  The FFN hidden width is not in config.json; it is read off the shape
  of w_gate and then enforced on w_up and w_down.

Every shape is checked here, at load time. A mismatch raises ShapeError
naming the tensor, instead of surfacing later as a broadcasting error
inside attention.
"""

import os
from typing import Dict, Iterable, List, Optional, Protocol

import torch
from safetensors import safe_open
from tqdm import tqdm

from ternary_lm.config import ModelConfig
from ternary_lm.errors import ShapeError
from ternary_lm.model import TernaryModel, TransformerBlock
from ternary_lm.ternary import TernaryLayer

CONFIG_FILENAME = "config.json"
WEIGHTS_FILENAME = "model.safetensors"


# ═══════════════════════════════════════════════════════════════════════════
# Weight sources
# ═══════════════════════════════════════════════════════════════════════════

class WeightSource(Protocol):
    """Anything that can hand out named tensors."""

    def get(self, name: str) -> torch.Tensor: ...

    def names(self) -> List[str]: ...


def _upcast(tensor: torch.Tensor) -> torch.Tensor:
    """Half-precision floats are widened to float32; integers are left alone."""
    if tensor.is_floating_point() and tensor.dtype != torch.float32:
        return tensor.to(torch.float32)
    return tensor


class DictWeights:
    """In-memory weight source, e.g. freshly quantized tensors."""

    def __init__(self, tensors: Dict[str, torch.Tensor]):
        self._tensors = dict(tensors)

    def get(self, name: str) -> torch.Tensor:
        if name not in self._tensors:
            raise KeyError(f"Tensor not found: {name}")
        return _upcast(self._tensors[name])

    def names(self) -> List[str]:
        return list(self._tensors)


class SafeTensorsWeights:
    """
    Weight source backed by a .safetensors file.

    The header is read once to list tensor names and metadata. Tensors are
    memory-mapped and copied out one at a time in get(), so peak memory
    stays close to the size of the model itself.
    """

    def __init__(self, path: str):
        if not os.path.isfile(path):
            raise FileNotFoundError(f"Weights file not found: {path}")
        self.path = path
        with safe_open(path, framework="pt", device="cpu") as f:
            self._names = list(f.keys())
            self.metadata = f.metadata() or {}

    def get(self, name: str) -> torch.Tensor:
        if name not in self._names:
            raise KeyError(f"Tensor not found: {name}")
        with safe_open(self.path, framework="pt", device="cpu") as f:
            return _upcast(f.get_tensor(name))

    def names(self) -> List[str]:
        return list(self._names)


# ═══════════════════════════════════════════════════════════════════════════
# Model construction
# ═══════════════════════════════════════════════════════════════════════════

def _float_tensor(source: WeightSource, name: str, shape: Iterable[int]) -> torch.Tensor:
    tensor = source.get(name)
    shape = tuple(shape)
    if not tensor.is_floating_point():
        raise ShapeError(f"{name}: expected a float tensor, got {tensor.dtype}")
    if tuple(tensor.shape) != shape:
        raise ShapeError(f"{name}: expected shape {shape}, got {tuple(tensor.shape)}")
    return tensor.contiguous()


def _ternary_layer(
    source: WeightSource,
    prefix: str,
    in_features: int,
    out_features: Optional[int] = None,
) -> TernaryLayer:
    packed = source.get(f"{prefix}.weight_packed")
    scale = source.get(f"{prefix}.scale")

    # Some exporters write the packed bytes as I8; the bits are what matter
    if packed.dtype == torch.int8:
        packed = packed.view(torch.uint8)
    if out_features is not None and packed.dim() == 2 and packed.shape[0] != out_features:
        raise ShapeError(
            f"{prefix}.weight_packed: expected {out_features} output rows, got {packed.shape[0]}"
        )
    return TernaryLayer(packed, scale.reshape(-1), in_features=in_features, name=prefix)


def load_block(source: WeightSource, idx: int, config: ModelConfig) -> TransformerBlock:
    """Read and shape-check the tensors of block `idx`."""
    p = f"blocks.{idx}"
    dim = config.dim

    w_gate = _ternary_layer(source, f"{p}.mlp.w_gate", dim)
    hidden = w_gate.out_features

    return TransformerBlock(
        norm1=_float_tensor(source, f"{p}.norm1.weight", (dim,)),
        q_proj=_ternary_layer(source, f"{p}.attn.q_proj", dim, config.n_heads * config.head_dim),
        kv_proj=_ternary_layer(source, f"{p}.attn.kv_proj", dim, 2 * config.kv_dim),
        proj=_ternary_layer(source, f"{p}.attn.proj", config.n_heads * config.head_dim, dim),
        norm2=_float_tensor(source, f"{p}.norm2.weight", (dim,)),
        w_gate=w_gate,
        w_up=_ternary_layer(source, f"{p}.mlp.w_up", dim, hidden),
        w_down=_ternary_layer(source, f"{p}.mlp.w_down", hidden, dim),
    )


def build_model(
    config: ModelConfig,
    source: WeightSource,
    show_progress: bool = False,
) -> TernaryModel:
    """
    Assemble a TernaryModel from a config and a weight source.

    Args:
        config: Architecture; validated before any tensor is read.
        source: Where tensors come from (file or dict).
        show_progress: Draw a tqdm bar while blocks are loaded.

    Raises:
        ConfigError: invalid config.
        KeyError: a required tensor is missing.
        ShapeError: a tensor does not match the config.
    """
    config.validate()
    vocab_dim = (config.vocab_size, config.dim)

    embedding = _float_tensor(source, "tok.weight", vocab_dim)
    head = _float_tensor(source, "head.weight", vocab_dim)
    norm = _float_tensor(source, "norm.weight", (config.dim,))

    blocks = [
        load_block(source, i, config)
        for i in tqdm(range(config.n_layers), desc="Loading blocks", disable=not show_progress)
    ]
    return TernaryModel(config, embedding, head, norm, blocks)


def load_model(base_path: str, show_progress: bool = False) -> TernaryModel:
    """
    Load a model directory (config.json + model.safetensors).

    Args:
        base_path: Directory containing the two files.
        show_progress: Draw a tqdm bar while blocks are loaded.

    Returns:
        A CPU-resident TernaryModel with packed weights.
    """
    config = ModelConfig.load(os.path.join(base_path, CONFIG_FILENAME))
    source = SafeTensorsWeights(os.path.join(base_path, WEIGHTS_FILENAME))
    return build_model(config, source, show_progress=show_progress)
