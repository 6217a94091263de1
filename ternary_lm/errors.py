"""
Exception types raised by the ternary inference engine.

Only genuine contract violations are exceptions. The two "soft" ways a
generation session can end early (the context window filling up, or the
user pressing stop) are NOT errors: generate() returns the partial text
and records the reason on the engine (see engine.StopReason).

FAILURE MODES:
  ┌──────────────────────────────┬──────────────────────────────────────┐
  │ Exception                    │ When                                 │
  ├──────────────────────────────┼──────────────────────────────────────┤
  │ ConfigError                  │ config.json missing/invalid field    │
  │ ShapeError                   │ packed tensor vs feature mismatch    │
  │ CacheOverflowError           │ KV write past max_seq_len            │
  │ GenerationInProgressError    │ second generate() on a busy engine   │
  └──────────────────────────────┴──────────────────────────────────────┘

Tokenizer and weight-file failures (FileNotFoundError, KeyError, errors
from the safetensors library) are propagated unchanged.
"""


class ConfigError(ValueError):
    """A required model configuration field is missing or invalid."""


class ShapeError(ValueError):
    """A tensor's shape does not match the features the model expects."""


class CacheOverflowError(IndexError):
    """A KV cache write would land at or beyond max_seq_len."""


class GenerationInProgressError(RuntimeError):
    """generate() was called while another session is still running."""
