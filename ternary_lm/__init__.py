"""
ternary-lm: inference engine for ternary-weight transformer language models.

Every linear projection inside a transformer block stores its weights in
{-1, 0, +1}, packed four per byte with one float scale per output channel.
The engine loads such a model from a safetensors file and streams
generated text token by token.

Key modules:
  - config:    Model and generation configuration
  - ternary:   2-bit packing, TernaryLayer, ternary_matmul
  - model:     Kernels, RoPE table, KV cache, TernaryModel forward passes
  - loader:    safetensors / in-memory weight sources → TernaryModel
  - quantize:  Float → ternary conversion and model export
  - tokenizer: BPE (tokenizer.json) and SentencePiece tokenizers
  - engine:    Async generation controller, CPU and device backends
  - device:    Hardware abstraction (CUDA/MPS/CPU)
  - utils:     Seeding, timing, logging, model summary
  - errors:    Exception types
"""

__version__ = "0.1.0"
