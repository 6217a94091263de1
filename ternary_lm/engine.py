"""
Inference engine: prompt in, streamed tokens out.

This module drives autoregressive generation over a TernaryModel. The
engine produces text one token at a time:
  1. Encode the prompt into tokens
  2. Feed the whole prompt through the model (PREFILL phase)
  3. Sample the next token from the model's predictions
  4. Hand its text to the caller's callback, then yield to the event loop
  5. Feed that token back into the model (DECODE phase)
  6. Repeat 3-5 until max_tokens, stop(), or the context window is full

TWO-PHASE GENERATION:

  PREFILL PHASE (processing the prompt):
    All prompt positions go through the model in one pass with causal
    attention. Every block writes its keys/values into the KV cache and
    the cursor becomes the prompt length. Only the LAST position's logits
    are computed: they predict the first generated token.

  DECODE PHASE (generating new tokens):
    Each sampled token is fed through alone at position = cursor. It
    attends over the cached keys/values 0..cursor, so nothing before it
    is ever recomputed.

COOPERATIVE STREAMING:
  generate() is a coroutine. After every token it awaits asyncio.sleep(0),
  the ONE suspension point per token. That is where a UI task gets to run
  and where stop() from another task takes effect: the flag is checked
  right after the yield, so the token already delivered to the callback
  is the last one.

STOPPING:
  ┌───────────────┬──────────────────────────────────┬────────────────┐
  │ Reason        │ Condition                        │ Final state    │
  ├───────────────┼──────────────────────────────────┼────────────────┤
  │ completed     │ max_tokens tokens produced       │ COMPLETED      │
  │ cancelled     │ stop() was called                │ STOPPED        │
  │ capacity      │ cache.seq_len >= max_seq_len - 1 │ STOPPED        │
  └───────────────┴──────────────────────────────────┴────────────────┘

  None of these raise: generate() returns the text produced so far and
  the reason is left on engine.stop_reason.

SAMPLING:
  logits / temperature → stable softmax → draw r ~ U[0, 1) → first index
  whose cumulative probability exceeds r (the last index if rounding
  leaves the total just below r). temperature <= 0 means greedy argmax.

BACKENDS:
  TernaryCPUEngine  packed weights on the CPU, decoded inside every matmul
  DeviceEngine      every ternary layer decoded ONCE to a dense matrix,
                    on the best available device (cuda → mps → cpu)
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, asdict
from enum import Enum
from typing import Callable, List, Optional

import torch

from ternary_lm.device import device_info, get_device, get_memory_usage
from ternary_lm.errors import GenerationInProgressError
from ternary_lm.loader import load_model
from ternary_lm.model import KVCache, TernaryModel, stable_softmax
from ternary_lm.tokenizer import Tokenizer, load_tokenizer
from ternary_lm.utils import InferenceLogger, Timer


# ═══════════════════════════════════════════════════════════════════════════
# Records
# ═══════════════════════════════════════════════════════════════════════════

class GenerationState(Enum):
    IDLE = "idle"
    PREFILLING = "prefilling"
    DECODING = "decoding"
    STOPPED = "stopped"
    COMPLETED = "completed"


class StopReason(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    CAPACITY = "capacity"


@dataclass
class GenerationStats:
    """Running statistics handed to the on_token callback."""
    tokens_per_second: float
    total_tokens: int       # tokens produced so far, including this one
    elapsed_ms: float       # since generate() was called


@dataclass
class MemoryStats:
    """
    Weight memory accounting.

      packed_weights_kb   2 bits per ternary weight + 4 bytes per scale
      fp16_equivalent_kb  every weight (ternary + embedding + head) at 2 bytes
      compression_ratio   fp16_equivalent / (packed + scales + fp16 embedding/head)
      scales_kb           4 bytes per output channel of every ternary layer
    """
    packed_weights_kb: float
    fp16_equivalent_kb: float
    compression_ratio: float
    scales_kb: float

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EngineInfo:
    """Model dimensions as seen by a front-end."""
    vocab_size: int
    hidden_dim: int
    context_length: int
    n_layers: int

    def to_dict(self) -> dict:
        return asdict(self)


TokenCallback = Callable[[str, GenerationStats], None]


# ═══════════════════════════════════════════════════════════════════════════
# Sampling
# ═══════════════════════════════════════════════════════════════════════════

def sample_token(
    logits: torch.Tensor,
    temperature: float,
    generator: Optional[torch.Generator] = None,
) -> int:
    """
    Sample one token ID from a logits vector.

    Args:
        logits: Shape (vocab_size,). Moved to the CPU if needed.
        temperature: > 0 scales logits before softmax; <= 0 is greedy.
        generator: CPU torch.Generator for the uniform draw. None uses
                   the global generator.

    Returns:
        The sampled token ID.
    """
    logits = logits.detach().reshape(-1).to("cpu", torch.float32)

    if temperature <= 0:
        return int(torch.argmax(logits))

    probs = stable_softmax(logits / temperature)
    r = torch.rand(1, generator=generator).item()

    cumulative = torch.cumsum(probs, dim=0)
    above = torch.nonzero(cumulative > r)
    if above.numel() == 0:
        return probs.numel() - 1
    return int(above[0, 0])


# ═══════════════════════════════════════════════════════════════════════════
# Engine
# ═══════════════════════════════════════════════════════════════════════════

class InferenceEngine(ABC):
    """
    Generation controller shared by every backend.

    One engine owns one model, one tokenizer and ONE KV cache, allocated
    in the constructor and reused by every generate() call. Only one
    generate() may run at a time.

    USAGE:
      engine = create_engine("my_model", backend="cpu", seed=0)

      async def main():
          text = await engine.generate(
              "Once upon a time", max_tokens=50,
              on_token=lambda text, stats: print(text, end="", flush=True),
          )

      asyncio.run(main())
    """

    backend = "base"

    def __init__(
        self,
        model: TernaryModel,
        tokenizer: Tokenizer,
        seed: Optional[int] = None,
        logger: Optional[InferenceLogger] = None,
    ):
        """
        Args:
            model: Loaded model.
            tokenizer: Anything with encode/decode_token (see tokenizer.py).
            seed: Seed for the sampling generator. None = nondeterministic.
            logger: Where to log. Defaults to a quiet logger.
        """
        self.model = self._prepare(model)
        self.tokenizer = tokenizer
        self.logger = logger or InferenceLogger(quiet=True)
        self.cache: KVCache = self.model.new_cache()

        self.generator = torch.Generator(device="cpu")
        if seed is not None:
            self.generator.manual_seed(seed)
        else:
            self.generator.seed()

        self.state = GenerationState.IDLE
        self.stop_reason: Optional[StopReason] = None
        self._stop_requested = False

        self.logger.log_model(self.get_config(), self.get_memory_stats())

    @abstractmethod
    def _prepare(self, model: TernaryModel) -> TernaryModel:
        """Put the model's weights where and how this backend wants them."""

    @classmethod
    def from_pretrained(
        cls,
        base_path: str,
        seed: Optional[int] = None,
        logger: Optional[InferenceLogger] = None,
        show_progress: bool = False,
        **kwargs,
    ) -> "InferenceEngine":
        """Load config.json, model.safetensors and the tokenizer from a directory."""
        model = load_model(base_path, show_progress=show_progress)
        tokenizer = load_tokenizer(base_path)
        return cls(model, tokenizer, seed=seed, logger=logger, **kwargs)

    @property
    def config(self):
        return self.model.config

    @property
    def is_generating(self) -> bool:
        return self.state in (GenerationState.PREFILLING, GenerationState.DECODING)

    # ── Model calls (overridable per backend) ──────────────────────────────

    def _prefill(self, tokens: List[int]) -> torch.Tensor:
        return self.model.forward_prefill(tokens, self.cache)

    def _decode(self, token: int) -> torch.Tensor:
        return self.model.forward_decode(token, self.cache)

    # ── Generation ─────────────────────────────────────────────────────────

    async def generate(
        self,
        prompt: str,
        max_tokens: int,
        on_token: Optional[TokenCallback] = None,
        temperature: float = 0.8,
    ) -> str:
        """
        Generate up to max_tokens tokens continuing `prompt`.

        Args:
            prompt: Input text. Must encode to at least one token.
            max_tokens: Upper bound on sampled tokens.
            on_token: Called as on_token(text, stats) after each token is
                      sampled, before the engine yields.
            temperature: Sampling temperature (<= 0 is greedy).

        Returns:
            The concatenated text of every generated token.

        Raises:
            GenerationInProgressError: another generate() is running.
            ValueError: the prompt encodes to zero tokens.
        """
        if self.is_generating:
            raise GenerationInProgressError("generate() is already running on this engine")

        self._stop_requested = False
        self.stop_reason = None
        self.state = GenerationState.PREFILLING
        start = time.perf_counter()

        try:
            # ── Step 1: Encode the prompt ──────────────────────────────────
            tokens = list(self.tokenizer.encode(prompt))
            if not tokens:
                raise ValueError("prompt encodes to zero tokens")
            max_seq_len = self.config.max_seq_len
            if len(tokens) > max_seq_len:
                self.logger.log_info(
                    f"[Engine] prompt of {len(tokens)} tokens truncated to the last {max_seq_len}"
                )
                tokens = tokens[-max_seq_len:]

            # ── Step 2: PREFILL ────────────────────────────────────────────
            self.cache.reset()
            with Timer("Prefill", self.model.device) as prefill_timer:
                logits = self._prefill(tokens)
            self.state = GenerationState.DECODING

            # ── Step 3: DECODE loop ────────────────────────────────────────
            pieces: List[str] = []
            for step in range(max_tokens):
                next_token = sample_token(logits, temperature, self.generator)
                text = self.tokenizer.decode_token(next_token)
                pieces.append(text)

                elapsed_ms = (time.perf_counter() - start) * 1000
                stats = GenerationStats(
                    tokens_per_second=(step + 1) / (elapsed_ms / 1000) if elapsed_ms > 0 else 0.0,
                    total_tokens=step + 1,
                    elapsed_ms=elapsed_ms,
                )
                if on_token is not None:
                    on_token(text, stats)

                # The one suspension point per token
                await asyncio.sleep(0)

                if self._stop_requested:
                    self._finish(GenerationState.STOPPED, StopReason.CANCELLED)
                    break
                if self.cache.seq_len >= max_seq_len - 1:
                    self._finish(GenerationState.STOPPED, StopReason.CAPACITY)
                    break

                logits = self._decode(next_token)
            else:
                self._finish(GenerationState.COMPLETED, StopReason.COMPLETED)

        except BaseException:
            self.state = GenerationState.IDLE
            raise

        self.logger.log_generation(
            prompt_tokens=len(tokens),
            generated_tokens=len(pieces),
            elapsed_ms=(time.perf_counter() - start) * 1000,
            prefill_ms=prefill_timer.elapsed_ms,
            stop_reason=self.stop_reason.value,
        )
        return "".join(pieces)

    def _finish(self, state: GenerationState, reason: StopReason) -> None:
        self.state = state
        self.stop_reason = reason

    def generate_sync(
        self,
        prompt: str,
        max_tokens: int,
        on_token: Optional[TokenCallback] = None,
        temperature: float = 0.8,
    ) -> str:
        """Run generate() to completion from synchronous code."""
        return asyncio.run(self.generate(prompt, max_tokens, on_token=on_token, temperature=temperature))

    def stop(self) -> None:
        """Request cancellation; honored right after the next yield."""
        self._stop_requested = True

    def reset_cache(self) -> None:
        """Forget the cached sequence (the next generate() does this anyway)."""
        self.cache.reset()

    # ── Introspection ──────────────────────────────────────────────────────

    def get_memory_stats(self) -> MemoryStats:
        ternary = self.model.ternary_weight_count
        packed_kb = ternary * 0.25 / 1024
        scales_kb = self.model.scale_count * 4 / 1024
        fp16_kb = self.model.float_weight_count * 2 / 1024
        fp16_equivalent_kb = ternary * 2 / 1024 + fp16_kb
        return MemoryStats(
            packed_weights_kb=packed_kb + scales_kb,
            fp16_equivalent_kb=fp16_equivalent_kb,
            compression_ratio=fp16_equivalent_kb / (packed_kb + scales_kb + fp16_kb),
            scales_kb=scales_kb,
        )

    def get_config(self) -> EngineInfo:
        return EngineInfo(
            vocab_size=self.config.vocab_size,
            hidden_dim=self.config.dim,
            context_length=self.config.max_seq_len,
            n_layers=self.config.n_layers,
        )


class TernaryCPUEngine(InferenceEngine):
    """Packed weights on the CPU; every matmul unpacks its codes on demand."""

    backend = "cpu"

    def _prepare(self, model: TernaryModel) -> TernaryModel:
        return model.to(torch.device("cpu"))


class DeviceEngine(InferenceEngine):
    """
    Dense weights on the best available device.

    Each ternary layer is decoded ONCE at construction. The packed bytes
    stay alongside (memory stats still describe the packed model), and
    logits are produced on the device and sampled on the CPU.
    """

    backend = "device"

    def __init__(
        self,
        model: TernaryModel,
        tokenizer: Tokenizer,
        seed: Optional[int] = None,
        logger: Optional[InferenceLogger] = None,
        device: Optional[torch.device] = None,
    ):
        self.device = torch.device(device) if device is not None else get_device()
        super().__init__(model, tokenizer, seed=seed, logger=logger)
        self.logger.log_info(f"[Engine] dense weights on\n{device_info(self.device)}")
        mem = get_memory_usage(self.device)
        self.logger.log_info(
            f"[Engine] device memory: {mem['allocated_mb']:.1f} MB allocated, "
            f"{mem['reserved_mb']:.1f} MB reserved"
        )

    def _prepare(self, model: TernaryModel) -> TernaryModel:
        return model.to(self.device).materialize()


ENGINES = {
    TernaryCPUEngine.backend: TernaryCPUEngine,
    DeviceEngine.backend: DeviceEngine,
}


def create_engine(base_path: str, backend: str = "cpu", **kwargs) -> InferenceEngine:
    """
    Load a model directory into the requested backend.

    Args:
        base_path: Directory with config.json, model.safetensors and a tokenizer.
        backend: "cpu" or "device".
        **kwargs: Passed to the engine (seed, logger, show_progress, device).

    Raises:
        ValueError: unknown backend.
    """
    if backend not in ENGINES:
        raise ValueError(f"Unknown backend '{backend}'. Choose from: {list(ENGINES)}")
    return ENGINES[backend].from_pretrained(base_path, **kwargs)
