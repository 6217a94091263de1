"""
Ternary Transformer Forward Pass: kernels, rotary table, KV cache, model.

This module holds everything between "a list of token IDs" and "a vector of
logits over the vocabulary". There are no trainable modules here: the
weights were produced elsewhere (see quantize.py and loader.py) and are
only ever READ. Each kernel is a plain function over torch tensors.

ARCHITECTURE OVERVIEW (bottom-up reading order):
  1. rms_norm / stable_softmax / silu   Numeric kernels
  2. RotaryTable      Precomputed cos/sin, half-split RoPE
  3. KVCache          Preallocated per-block key/value storage + cursor
  4. Attention        GQA over the cache, prefill (causal) and decode paths
  5. feed_forward     SwiGLU through three ternary projections
  6. TransformerBlock The tensors of one decoder layer
  7. TernaryModel     Embedding → N blocks → final norm → head

WHAT IS TERNARY, WHAT IS NOT:
  ┌─────────────────────────┬──────────────────┬─────────────────────────┐
  │ Tensor                  │ Storage          │ Multiplied with         │
  ├─────────────────────────┼──────────────────┼─────────────────────────┤
  │ tok.weight  (embedding) │ float32          │ row lookup              │
  │ norm1 / norm2 / norm    │ float32          │ element-wise            │
  │ q_proj, kv_proj, proj   │ 2-bit + scale    │ ternary_matmul          │
  │ w_gate, w_up, w_down    │ 2-bit + scale    │ ternary_matmul          │
  │ head.weight (LM head)   │ float32          │ dense matmul            │
  └─────────────────────────┴──────────────────┴─────────────────────────┘

TWO ENTRY POINTS:
  forward_prefill(tokens, cache): all prompt positions at once, causal
      attention, returns logits for the LAST position only.
  forward_decode(token, cache):   one new position, attends over the whole
      cache (positions 0..pos), returns its logits.

  Both write every block's keys/values into the cache and advance the
  shared cursor exactly once, AFTER the last block has been processed.
"""

import math
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple, Union

import torch

from ternary_lm.config import ModelConfig
from ternary_lm.errors import CacheOverflowError, ShapeError
from ternary_lm.ternary import TernaryLayer, ternary_matmul


# ═══════════════════════════════════════════════════════════════════════════
# 1. Numeric kernels
# ═══════════════════════════════════════════════════════════════════════════

def rms_norm(x: torch.Tensor, weight: torch.Tensor, eps: float = 1e-5) -> torch.Tensor:
    """
    Root Mean Square normalization with a learned per-feature gain.

    MATH:
      rms(x)     = sqrt( (1/dim) × Σ x_i² + eps )
      RMSNorm(x) = (x / rms(x)) × weight

    Every row of x (the last dimension) is normalized independently, so a
    (seq, dim) prompt batch and a single (dim,) decode vector go through
    the same code.

    Args:
        x: Input of shape (..., dim).
        weight: Gain of shape (dim,).
        eps: Added inside the square root. 1e-5 for the exported models.

    Returns:
        Tensor of the same shape as x.
    """
    rms = torch.sqrt(x.pow(2).mean(dim=-1, keepdim=True) + eps)
    return x / rms * weight


def stable_softmax(scores: torch.Tensor, dim: int = -1) -> torch.Tensor:
    """
    Softmax with the maximum subtracted first.

    exp(s - max) never overflows; masked entries set to -inf become exactly 0.
    """
    shifted = scores - scores.max(dim=dim, keepdim=True).values
    exps = torch.exp(shifted)
    return exps / exps.sum(dim=dim, keepdim=True)


def silu(v: torch.Tensor) -> torch.Tensor:
    """Swish / SiLU: v × sigmoid(v) = v / (1 + e^(-v))."""
    return v / (1.0 + torch.exp(-v))


def kv_head_for(head: int, n_heads: int, n_kv_heads: int) -> int:
    """
    Key/value head that query head `head` reads from (Grouped Query Attention).

    With n_heads=4, n_kv_heads=2:
        q heads [0, 1] → kv head 0
        q heads [2, 3] → kv head 1
    """
    return head // (n_heads // n_kv_heads)


# ═══════════════════════════════════════════════════════════════════════════
# 2. Rotary Positional Embeddings (half-split pairing)
# ═══════════════════════════════════════════════════════════════════════════

class RotaryTable:
    """
    Precomputed cos/sin tables for Rotary Positional Embeddings.

    PAIRING:
      The exported models rotate dimension i together with dimension
      i + head_dim/2 (the "rotate-half" layout), NOT adjacent pairs:

        for i in 0 .. head_dim/2 - 1, at position p:
          angle = p / theta^(2i / head_dim)
          x'[i]              = x[i] × cos(angle) − x[i + half] × sin(angle)
          x'[i + half]       = x[i] × sin(angle) + x[i + half] × cos(angle)

    PROPERTIES:
      - Rotation preserves the norm of every head vector
      - Position 0 is the identity (angle 0 for every pair)
      - dot(rotate(q, m), rotate(k, n)) depends only on n - m

    Angles are computed in float64 and stored as float32 so that large
    positions do not lose precision in the product p × freq.
    """

    def __init__(
        self,
        head_dim: int,
        max_seq_len: int,
        theta: float = 10000.0,
        device: Optional[torch.device] = None,
    ):
        if head_dim % 2 != 0:
            raise ValueError(f"head_dim must be even for RoPE, got {head_dim}")
        self.head_dim = head_dim
        self.half = head_dim // 2
        self.max_seq_len = max_seq_len
        self.theta = theta

        # freqs[i] = 1 / theta^(2i / head_dim), shape (half,)
        dim_indices = torch.arange(self.half, dtype=torch.float64)
        freqs = 1.0 / (theta ** (2.0 * dim_indices / head_dim))

        # angles[p, i] = p × freqs[i], shape (max_seq_len, half)
        positions = torch.arange(max_seq_len, dtype=torch.float64)
        angles = torch.outer(positions, freqs)

        self.cos = angles.cos().to(torch.float32)
        self.sin = angles.sin().to(torch.float32)
        if device is not None:
            self.to(device)

    def to(self, device: torch.device) -> "RotaryTable":
        self.cos = self.cos.to(device)
        self.sin = self.sin.to(device)
        return self

    def rotate(self, x: torch.Tensor, start_pos: int = 0) -> torch.Tensor:
        """
        Rotate query or key vectors, one position per leading row.

        Args:
            x: Tensor of shape (seq_len, n_heads, head_dim). Row t is at
               absolute position start_pos + t.
            start_pos: Absolute position of the first row.

        Returns:
            Rotated tensor of the same shape. The input is not modified.

        Raises:
            CacheOverflowError: if any position is outside the table.
        """
        seq_len = x.shape[0]
        if start_pos < 0 or start_pos + seq_len > self.max_seq_len:
            raise CacheOverflowError(
                f"positions {start_pos}..{start_pos + seq_len - 1} are outside "
                f"the rotary table (max_seq_len={self.max_seq_len})"
            )
        # (seq_len, half) → (seq_len, 1, half) to broadcast over heads
        cos = self.cos[start_pos:start_pos + seq_len].unsqueeze(1)
        sin = self.sin[start_pos:start_pos + seq_len].unsqueeze(1)

        first = x[..., :self.half]
        second = x[..., self.half:]
        return torch.cat(
            [first * cos - second * sin, first * sin + second * cos],
            dim=-1,
        )


# ═══════════════════════════════════════════════════════════════════════════
# 3. KV Cache
# ═══════════════════════════════════════════════════════════════════════════

class KVCache:
    """
    Preallocated key/value storage for every block, plus one shared cursor.

    LAYOUT (per block):
      keys[b]   : (n_kv_heads, max_seq_len, head_dim)
      values[b] : (n_kv_heads, max_seq_len, head_dim)

      Keys are stored ALREADY ROTATED (RoPE applied at their own position),
      so decode never re-rotates history.

    CURSOR:
      seq_len counts the positions that are valid in EVERY block. A forward
      pass writes the same position range into each block in turn, then
      calls advance() once. The cursor only moves forward between reset()
      calls and never exceeds max_seq_len.

      populate() must write starting exactly at the cursor. That keeps the
      prefix 0..seq_len-1 contiguous and makes stale entries beyond the
      cursor unreachable.
    """

    def __init__(
        self,
        config: ModelConfig,
        device: Optional[torch.device] = None,
        dtype: torch.dtype = torch.float32,
    ):
        self.n_layers = config.n_layers
        self.n_kv_heads = config.n_kv_heads
        self.head_dim = config.head_dim
        self.max_seq_len = config.max_seq_len

        shape = (config.n_kv_heads, config.max_seq_len, config.head_dim)
        self.keys = [torch.zeros(shape, dtype=dtype, device=device) for _ in range(config.n_layers)]
        self.values = [torch.zeros(shape, dtype=dtype, device=device) for _ in range(config.n_layers)]
        self._seq_len = 0

    @property
    def seq_len(self) -> int:
        """Number of positions currently valid in every block."""
        return self._seq_len

    @property
    def nbytes(self) -> int:
        return sum(t.numel() * t.element_size() for t in self.keys + self.values)

    def populate(
        self,
        block_idx: int,
        start_pos: int,
        keys: torch.Tensor,
        values: torch.Tensor,
    ) -> None:
        """
        Write keys/values for positions start_pos .. start_pos + n - 1.

        Args:
            block_idx: Which block's storage to write.
            start_pos: First position; must equal the current cursor.
            keys: (n, n_kv_heads, head_dim), already rotated.
            values: (n, n_kv_heads, head_dim).

        Raises:
            CacheOverflowError: if the write would reach max_seq_len.
            ValueError: if start_pos is not the cursor.
            ShapeError: if keys/values do not match the cache layout.
        """
        n = keys.shape[0]
        if start_pos + n > self.max_seq_len:
            raise CacheOverflowError(
                f"cannot write positions {start_pos}..{start_pos + n - 1}: "
                f"cache holds {self.max_seq_len} positions"
            )
        if start_pos != self._seq_len:
            raise ValueError(
                f"cache writes must continue at the cursor ({self._seq_len}), got start_pos={start_pos}"
            )
        expected = (n, self.n_kv_heads, self.head_dim)
        if tuple(keys.shape) != expected or tuple(values.shape) != expected:
            raise ShapeError(
                f"expected keys/values of shape {expected}, "
                f"got {tuple(keys.shape)} and {tuple(values.shape)}"
            )
        # (n, n_kv, head_dim) → (n_kv, n, head_dim) to match the storage layout
        self.keys[block_idx][:, start_pos:start_pos + n] = keys.transpose(0, 1)
        self.values[block_idx][:, start_pos:start_pos + n] = values.transpose(0, 1)

    def read(self, block_idx: int, length: int) -> Tuple[torch.Tensor, torch.Tensor]:
        """Views of the first `length` positions: two (n_kv_heads, length, head_dim) tensors."""
        if length > self.max_seq_len:
            raise CacheOverflowError(f"cannot read {length} positions from a cache of {self.max_seq_len}")
        return self.keys[block_idx][:, :length], self.values[block_idx][:, :length]

    def advance(self, n: int) -> None:
        """Move the cursor forward after all blocks have been written."""
        if self._seq_len + n > self.max_seq_len:
            raise CacheOverflowError(
                f"cursor {self._seq_len} + {n} would exceed max_seq_len={self.max_seq_len}"
            )
        self._seq_len += n

    def reset(self) -> None:
        """Start a new sequence. Stored tensors are left as they are; the cursor hides them."""
        self._seq_len = 0

    def to(self, device: torch.device) -> "KVCache":
        self.keys = [k.to(device) for k in self.keys]
        self.values = [v.to(device) for v in self.values]
        return self


# ═══════════════════════════════════════════════════════════════════════════
# 4. Attention (GQA over the cache)
# ═══════════════════════════════════════════════════════════════════════════

def _attend(
    q: torch.Tensor,
    keys: torch.Tensor,
    values: torch.Tensor,
    config: ModelConfig,
    causal: bool,
    start_pos: int = 0,
) -> torch.Tensor:
    """
    Scaled dot-product attention of rotated queries over cached keys/values.

    Args:
        q: (seq_q, n_heads, head_dim), already rotated.
        keys, values: (n_kv_heads, kv_len, head_dim) from the cache.
        causal: Mask key position tk for query row tq when
                tk > start_pos + tq. Only used by prefill.
        start_pos: Absolute position of query row 0.

    Returns:
        (seq_q, n_heads × head_dim), heads concatenated in head order.
    """
    seq_q = q.shape[0]
    kv_len = keys.shape[1]

    # ── Step 1: GQA, give every query head its KV head ─────────────────────
    kv_index = torch.tensor(
        [kv_head_for(h, config.n_heads, config.n_kv_heads) for h in range(config.n_heads)],
        device=keys.device,
    )
    k = keys.index_select(0, kv_index)    # (n_heads, kv_len, head_dim)
    v = values.index_select(0, kv_index)  # (n_heads, kv_len, head_dim)

    # ── Step 2: Scores = q·k / √head_dim ───────────────────────────────────
    scores = torch.einsum("qhd,hkd->hqk", q, k) / math.sqrt(config.head_dim)
    # scores: (n_heads, seq_q, kv_len)

    # ── Step 3: Causal mask ────────────────────────────────────────────────
    if causal:
        future = torch.ones(seq_q, kv_len, dtype=torch.bool, device=scores.device).triu(start_pos + 1)
        scores = scores.masked_fill(future, float("-inf"))

    # ── Step 4: Softmax and weighted sum of values ─────────────────────────
    weights = stable_softmax(scores, dim=-1)
    out = torch.einsum("hqk,hkd->qhd", weights, v)  # (seq_q, n_heads, head_dim)
    return out.reshape(seq_q, config.n_heads * config.head_dim)


def _project_qkv(
    x: torch.Tensor,
    block: "TransformerBlock",
    config: ModelConfig,
) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor]:
    """q_proj and the fused kv_proj, split into heads. x is (rows, dim)."""
    rows = x.shape[0]
    q = ternary_matmul(x, block.q_proj).view(rows, config.n_heads, config.head_dim)

    # kv_proj output is [ K (kv_dim) | V (kv_dim) ]
    kv = ternary_matmul(x, block.kv_proj)
    k = kv[:, :config.kv_dim].reshape(rows, config.n_kv_heads, config.head_dim)
    v = kv[:, config.kv_dim:].reshape(rows, config.n_kv_heads, config.head_dim)
    return q, k, v


def attention_prefill(
    x: torch.Tensor,
    block: "TransformerBlock",
    cache: KVCache,
    block_idx: int,
    rope: RotaryTable,
    config: ModelConfig,
) -> torch.Tensor:
    """
    Causal self-attention over a whole prompt, filling this block's cache.

    The prompt starts at the cache cursor (0 for a fresh sequence), so a
    prompt can also be appended to an existing prefix.

    Data flow:
      x (seq, dim)
        ├─→ q_proj  → (seq, n_heads, hd)    → RoPE @ 0..seq-1 ─┐
        └─→ kv_proj → K (seq, n_kv, hd)      → RoPE ─→ cache    │
                    → V (seq, n_kv, hd)      ──────→ cache      │
                                      causal attention ←────────┘
                                      → proj → (seq, dim)

    Args:
        x: Normalized hidden states, shape (seq_len, dim).
        block: Weights of this layer.
        cache: KV cache; positions cursor..cursor+seq_len-1 of block_idx are written.
        block_idx: Index of this layer in the model.
        rope: Rotary table.
        config: Model configuration.

    Returns:
        Attention output (after proj), shape (seq_len, dim).
    """
    seq_len = x.shape[0]
    start_pos = cache.seq_len

    q, k, v = _project_qkv(x, block, config)
    q = rope.rotate(q, start_pos)
    k = rope.rotate(k, start_pos)

    cache.populate(block_idx, start_pos, k, v)
    keys, values = cache.read(block_idx, start_pos + seq_len)

    out = _attend(q, keys, values, config, causal=True, start_pos=start_pos)
    return ternary_matmul(out, block.proj)


def attention_decode(
    x: torch.Tensor,
    block: "TransformerBlock",
    cache: KVCache,
    block_idx: int,
    pos: int,
    rope: RotaryTable,
    config: ModelConfig,
) -> torch.Tensor:
    """
    Attention for ONE new token at position pos over cached positions 0..pos.

    The new key/value are written at pos first, so the token attends to
    itself along with everything before it. No mask is needed: nothing
    after pos is read.

    Args:
        x: Normalized hidden state, shape (dim,).
        pos: Absolute position of the new token (the cache cursor).

    Returns:
        Attention output (after proj), shape (dim,).
    """
    q, k, v = _project_qkv(x.unsqueeze(0), block, config)
    q = rope.rotate(q, pos)
    k = rope.rotate(k, pos)

    cache.populate(block_idx, pos, k, v)
    keys, values = cache.read(block_idx, pos + 1)

    out = _attend(q, keys, values, config, causal=False)
    return ternary_matmul(out[0], block.proj)


# ═══════════════════════════════════════════════════════════════════════════
# 5. SwiGLU Feed-Forward
# ═══════════════════════════════════════════════════════════════════════════

def feed_forward(x: torch.Tensor, block: "TransformerBlock") -> torch.Tensor:
    """
    SwiGLU: w_down( silu(w_gate(x)) ⊙ w_up(x) ).

    Works for a single (dim,) vector or a (rows, dim) batch.
    """
    gate = silu(ternary_matmul(x, block.w_gate))
    up = ternary_matmul(x, block.w_up)
    return ternary_matmul(gate * up, block.w_down)


# ═══════════════════════════════════════════════════════════════════════════
# 6. Transformer Block
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class TransformerBlock:
    """
    The tensors of one decoder layer.

      x ─→ rms_norm(norm1) ─→ attention ─→ + ─→ rms_norm(norm2) ─→ FFN ─→ + ─→
      └──────────────────────────────────┘ └─────────────────────────────────┘
    """

    norm1: torch.Tensor
    q_proj: TernaryLayer
    kv_proj: TernaryLayer
    proj: TernaryLayer
    norm2: torch.Tensor
    w_gate: TernaryLayer
    w_up: TernaryLayer
    w_down: TernaryLayer

    @property
    def hidden_dim(self) -> int:
        return self.w_gate.out_features

    def ternary_layers(self) -> Iterator[Tuple[str, TernaryLayer]]:
        """(name, layer) for the six ternary projections, in file order."""
        yield "attn.q_proj", self.q_proj
        yield "attn.kv_proj", self.kv_proj
        yield "attn.proj", self.proj
        yield "mlp.w_gate", self.w_gate
        yield "mlp.w_up", self.w_up
        yield "mlp.w_down", self.w_down

    def to(self, device: torch.device) -> "TransformerBlock":
        self.norm1 = self.norm1.to(device)
        self.norm2 = self.norm2.to(device)
        for _, layer in self.ternary_layers():
            layer.to(device)
        return self


# ═══════════════════════════════════════════════════════════════════════════
# 7. Complete Model
# ═══════════════════════════════════════════════════════════════════════════

class TernaryModel:
    """
    Ternary decoder-only transformer, inference only.

    FULL ARCHITECTURE:
      Token IDs
        │
        ▼
      embedding[token] → (seq, dim)
        │
        ▼
      n_layers × block:
        │  h = h + attention(rms_norm(h, norm1))
        │  h = h + feed_forward(rms_norm(h, norm2))
        │
        ▼
      rms_norm(h[last], norm)
        │
        ▼
      head · h → logits (vocab_size,)

    The model owns no cache; callers create one with new_cache() and pass
    it to every forward call. That keeps the model itself immutable after
    loading and lets one set of weights serve several caches.
    """

    def __init__(
        self,
        config: ModelConfig,
        embedding: torch.Tensor,
        head: torch.Tensor,
        norm: torch.Tensor,
        blocks: Sequence[TransformerBlock],
    ):
        config.validate()
        expected = (config.vocab_size, config.dim)
        if tuple(embedding.shape) != expected:
            raise ShapeError(f"tok.weight: expected shape {expected}, got {tuple(embedding.shape)}")
        if tuple(head.shape) != expected:
            raise ShapeError(f"head.weight: expected shape {expected}, got {tuple(head.shape)}")
        if tuple(norm.shape) != (config.dim,):
            raise ShapeError(f"norm.weight: expected shape ({config.dim},), got {tuple(norm.shape)}")
        if len(blocks) != config.n_layers:
            raise ShapeError(f"expected {config.n_layers} blocks, got {len(blocks)}")

        self.config = config
        self.embedding = embedding
        self.head = head
        self.norm = norm
        self.blocks: List[TransformerBlock] = list(blocks)
        self.rope = RotaryTable(config.head_dim, config.max_seq_len, config.rope_theta)
        self.device = embedding.device

    # ── Housekeeping ───────────────────────────────────────────────────────

    def new_cache(self) -> KVCache:
        return KVCache(self.config, device=self.device)

    def to(self, device: torch.device) -> "TernaryModel":
        self.embedding = self.embedding.to(device)
        self.head = self.head.to(device)
        self.norm = self.norm.to(device)
        for block in self.blocks:
            block.to(device)
        self.rope.to(device)
        self.device = torch.device(device)
        return self

    def materialize(self) -> "TernaryModel":
        """Decode every ternary layer to a dense matrix once (accelerated backend)."""
        for block in self.blocks:
            for _, layer in block.ternary_layers():
                layer.materialize()
        return self

    def named_ternary_layers(self) -> Iterator[Tuple[str, TernaryLayer]]:
        for i, block in enumerate(self.blocks):
            for name, layer in block.ternary_layers():
                yield f"blocks.{i}.{name}", layer

    @property
    def ternary_weight_count(self) -> int:
        return sum(layer.num_weights for _, layer in self.named_ternary_layers())

    @property
    def scale_count(self) -> int:
        return sum(layer.out_features for _, layer in self.named_ternary_layers())

    @property
    def float_weight_count(self) -> int:
        """Embedding + head entries (the weights kept in floating point)."""
        return self.embedding.numel() + self.head.numel()

    # ── Forward passes ─────────────────────────────────────────────────────

    def _block_forward(self, h: torch.Tensor, block_idx: int, cache: KVCache, pos: Optional[int]) -> torch.Tensor:
        block = self.blocks[block_idx]
        eps = self.config.norm_eps

        # ── Attention sublayer with residual connection ────────────────────
        normed = rms_norm(h, block.norm1, eps)
        if pos is None:
            attn = attention_prefill(normed, block, cache, block_idx, self.rope, self.config)
        else:
            attn = attention_decode(normed, block, cache, block_idx, pos, self.rope, self.config)
        h = h + attn

        # ── FFN sublayer with residual connection ──────────────────────────
        normed = rms_norm(h, block.norm2, eps)
        return h + feed_forward(normed, block)

    def _logits(self, h_last: torch.Tensor) -> torch.Tensor:
        normed = rms_norm(h_last, self.norm, self.config.norm_eps)
        return self.head @ normed

    @torch.no_grad()
    def forward_prefill(self, tokens: Union[Sequence[int], torch.Tensor], cache: KVCache) -> torch.Tensor:
        """
        Run every prompt position through the model and fill the cache.

        Args:
            tokens: Prompt token IDs (non-empty).
            cache: Cache for this model's config. Normally empty; if not,
                   the tokens are appended after the cached prefix.

        Returns:
            Logits for the last prompt position, shape (vocab_size,).

        Raises:
            ValueError: empty prompt.
            CacheOverflowError: prompt does not fit in the remaining cache.
        """
        tokens = torch.as_tensor(tokens, dtype=torch.long, device=self.device)
        seq_len = tokens.numel()
        if seq_len == 0:
            raise ValueError("cannot prefill an empty token sequence")
        if cache.seq_len + seq_len > self.config.max_seq_len:
            raise CacheOverflowError(
                f"prompt of {seq_len} tokens does not fit after {cache.seq_len} cached "
                f"positions (max_seq_len={self.config.max_seq_len})"
            )

        # ── Step 1: Embedding lookup ───────────────────────────────────────
        h = self.embedding[tokens.reshape(-1)]  # (seq_len, dim)

        # ── Step 2: All blocks, each writing the same position range ───────
        for i in range(self.config.n_layers):
            h = self._block_forward(h, i, cache, pos=None)

        # ── Step 3: Cursor moves once, after the last block ───────────────
        cache.advance(seq_len)

        # ── Step 4: Final norm + head on the last position only ───────────
        return self._logits(h[-1])

    @torch.no_grad()
    def forward_decode(self, token: int, cache: KVCache) -> torch.Tensor:
        """
        Run one new token at position cache.seq_len.

        Returns:
            Logits for that position, shape (vocab_size,).

        Raises:
            CacheOverflowError: if the cache is already full.
        """
        pos = cache.seq_len
        if pos >= self.config.max_seq_len:
            raise CacheOverflowError(
                f"cache is full ({pos}/{self.config.max_seq_len}); cannot decode another token"
            )
        h = self.embedding[int(token)]  # (dim,)
        for i in range(self.config.n_layers):
            h = self._block_forward(h, i, cache, pos=pos)
        cache.advance(1)
        return self._logits(h)
