"""
Ternary weights: 2-bit packing, the layer store, and the matmul primitive.

Every linear projection inside a transformer block stores its weights in
{-1, 0, +1}. Four such weights fit in one byte, so a ternary layer needs
1/8 of the memory of the same layer in FP16 (plus one float scale per
output channel).

BYTE LAYOUT:
  A packed tensor has shape (out_features, ceil(in_features / 4)).
  Byte (n, b) holds the weights for output channel n and input features
  4b .. 4b+3, lowest bits first:

      bit:    7 6 | 5 4 | 3 2 | 1 0
      input:  4b+3| 4b+2| 4b+1| 4b

  Each 2-bit field is a CODE:
      00 →  0
      01 → +1
      10 → -1
      11 →  0   (never written by pack_ternary; decoded as zero)

  A trailing partial byte is padded with code 00, so padding contributes
  nothing to any dot product.

EFFECTIVE WEIGHT:
  W[n, k] = code(n, k) × scale[n]

  The scale multiplies the ACCUMULATED sum, not every term, so the inner
  loop is pure addition/subtraction of inputs:

      y[n] = scale[n] × Σ_k x[k] × code(n, k)
"""

from typing import Optional

import torch

from ternary_lm.errors import ShapeError


# Bit offsets of the four 2-bit fields inside a byte (input 4b+i → shift 2i)
_FIELD_SHIFTS = (0, 2, 4, 6)
# Multipliers that place a code into its field: code << 2i == code * 4^i
_FIELD_WEIGHTS = (1, 4, 16, 64)

CODE_ZERO = 0b00
CODE_PLUS = 0b01
CODE_MINUS = 0b10


def packed_width(in_features: int) -> int:
    """Number of bytes needed to pack one row of in_features ternary weights."""
    return (in_features + 3) // 4


def pack_ternary(values: torch.Tensor) -> torch.Tensor:
    """
    Pack ternary values, four per byte, along the last dimension.

    Args:
        values: Tensor (any integer or float dtype) whose entries are all
                in {-1, 0, +1}. Shape (..., K).

    Returns:
        uint8 tensor of shape (..., ceil(K / 4)).

    Raises:
        ValueError: if any entry is not exactly -1, 0 or +1.
    """
    values = torch.as_tensor(values)
    if not torch.all((values == -1) | (values == 0) | (values == 1)):
        raise ValueError("pack_ternary expects values in {-1, 0, +1}")

    *lead, k = values.shape
    n_bytes = packed_width(k)

    # Map value → code:  +1 → 01, -1 → 10, 0 → 00
    codes = (values == 1).to(torch.int32) * CODE_PLUS + (values == -1).to(torch.int32) * CODE_MINUS

    # Pad the last dimension to a whole number of bytes with code 00
    pad = n_bytes * 4 - k
    if pad:
        codes = torch.cat([codes, torch.zeros(*lead, pad, dtype=torch.int32)], dim=-1)

    # (..., n_bytes, 4) → shift each field into place and OR them together
    codes = codes.reshape(*lead, n_bytes, 4)
    weights = torch.tensor(_FIELD_WEIGHTS, dtype=torch.int32)
    return (codes * weights).sum(dim=-1).to(torch.uint8)


def unpack_ternary(packed: torch.Tensor, in_features: int) -> torch.Tensor:
    """
    Decode packed bytes back into ternary values.

    Args:
        packed: uint8 tensor of shape (..., ceil(in_features / 4)).
        in_features: Number of logical values per row (padding is dropped).

    Returns:
        int8 tensor of shape (..., in_features) with entries in {-1, 0, +1}.

    Raises:
        ShapeError: if the packed width cannot hold exactly in_features values.
    """
    if packed.shape[-1] != packed_width(in_features):
        raise ShapeError(
            f"packed width {packed.shape[-1]} does not match in_features={in_features} "
            f"(expected {packed_width(in_features)} bytes per row)"
        )
    shifts = torch.tensor(_FIELD_SHIFTS, dtype=torch.int32, device=packed.device)

    # (..., n_bytes) → (..., n_bytes, 4): extract the four 2-bit fields
    fields = (packed.to(torch.int32).unsqueeze(-1) >> shifts) & 0b11

    # 01 → +1, 10 → -1, 00 and 11 → 0
    values = (fields == CODE_PLUS).to(torch.int8) - (fields == CODE_MINUS).to(torch.int8)
    values = values.flatten(-2)
    return values[..., :in_features]


class TernaryLayer:
    """
    Packed weights and per-output-channel scales for one linear projection.

    Built once at load time and treated as read-only afterwards. The packed
    bytes are the source of truth; decode() produces the dense equivalent
    on demand.

    An accelerated backend may call materialize() once to keep the dense
    float matrix around (trading 16× memory for not re-decoding on every
    call). ternary_matmul() uses the dense copy when it exists.
    """

    def __init__(
        self,
        packed: torch.Tensor,
        scales: torch.Tensor,
        in_features: Optional[int] = None,
        name: str = "",
    ):
        """
        Args:
            packed: uint8 tensor of shape (out_features, ceil(in_features / 4)).
            scales: float tensor with out_features entries.
            in_features: Logical input width. Defaults to 4 × packed width.
            name: Tensor prefix (e.g. "blocks.0.attn.q_proj"), for messages.

        Raises:
            ShapeError: on any inconsistency between the three.
        """
        if packed.dim() != 2:
            raise ShapeError(f"{name or 'layer'}: packed weights must be 2-D, got shape {tuple(packed.shape)}")
        if packed.dtype != torch.uint8:
            raise ShapeError(f"{name or 'layer'}: packed weights must be uint8, got {packed.dtype}")

        out_features, n_bytes = packed.shape
        if in_features is None:
            in_features = n_bytes * 4
        if packed_width(in_features) != n_bytes:
            raise ShapeError(
                f"{name or 'layer'}: packed shape {tuple(packed.shape)} cannot hold "
                f"in_features={in_features} (needs {packed_width(in_features)} bytes per row)"
            )
        if scales.dim() != 1 or scales.numel() != out_features:
            raise ShapeError(
                f"{name or 'layer'}: expected {out_features} scales, got shape {tuple(scales.shape)}"
            )

        self.name = name
        self.in_features = in_features
        self.out_features = out_features
        self.packed = packed.contiguous()
        self.scales = scales.to(torch.float32).contiguous()
        self._dense: Optional[torch.Tensor] = None

    def __repr__(self) -> str:
        return (
            f"TernaryLayer(name={self.name!r}, in_features={self.in_features}, "
            f"out_features={self.out_features}, materialized={self.is_materialized})"
        )

    @property
    def device(self) -> torch.device:
        return self.packed.device

    @property
    def num_weights(self) -> int:
        return self.in_features * self.out_features

    @property
    def is_materialized(self) -> bool:
        return self._dense is not None

    def codes(self) -> torch.Tensor:
        """Ternary codes as int8, shape (out_features, in_features)."""
        return unpack_ternary(self.packed, self.in_features)

    def decode(self) -> torch.Tensor:
        """Dense float32 weight matrix code × scale, shape (out_features, in_features)."""
        return self.codes().to(torch.float32) * self.scales.unsqueeze(1)

    def materialize(self) -> "TernaryLayer":
        """Decode once and keep the dense matrix for subsequent matmuls."""
        self._dense = self.decode()
        return self

    def to(self, device: torch.device) -> "TernaryLayer":
        """Move packed bytes, scales and (if present) the dense copy to a device."""
        self.packed = self.packed.to(device)
        self.scales = self.scales.to(device)
        if self._dense is not None:
            self._dense = self._dense.to(device)
        return self

    def weight_distribution(self) -> dict:
        """Count of -1 / 0 / +1 weights, useful for sparsity reporting."""
        codes = self.codes()
        return {
            "negative_one": int((codes == -1).sum()),
            "zero": int((codes == 0).sum()),
            "positive_one": int((codes == 1).sum()),
            "total": self.num_weights,
        }


def ternary_matmul(x: torch.Tensor, layer: TernaryLayer) -> torch.Tensor:
    """
    y = x · Wᵀ for a ternary layer, decoding the packed codes on demand.

    HOW IT WORKS:
      1. Unpack the (out_features, in_features) code matrix from the bytes
      2. Accumulate Σ_k x[k] × code(n, k) for every output channel n
         (codes are exactly -1/0/+1, so this is a signed sum of inputs)
      3. Multiply each accumulated channel by its scale

    Single-token and batch inputs go through the same code path: a batch
    is just more rows of x.

    Args:
        x: Input of shape (in_features,) for one token, or
           (rows, in_features) for a batch of tokens.
        layer: The ternary projection.

    Returns:
        Output of shape (out_features,) or (rows, out_features).

    Raises:
        ShapeError: if x's last dimension is not layer.in_features.
    """
    if x.shape[-1] != layer.in_features:
        raise ShapeError(
            f"{layer.name or 'layer'}: input has {x.shape[-1]} features, "
            f"expected {layer.in_features}"
        )

    if layer._dense is not None:
        return x @ layer._dense.t()

    codes = layer.codes().to(x.dtype)       # (out, in), entries in {-1, 0, +1}
    acc = x @ codes.t()                     # (..., out): signed sums of inputs
    return acc * layer.scales
