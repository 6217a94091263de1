"""
Interactive text generation CLI.

USAGE:
    # Interactive mode (type prompts, get streamed completions)
    python scripts/generate_text.py --model-dir models/tiny

    # Single prompt
    python scripts/generate_text.py --model-dir models/tiny \
        --prompt "Once upon a time"

    # Dense weights on the best device, reproducible sampling
    python scripts/generate_text.py --model-dir models/tiny \
        --backend device --seed 0 --temperature 0.5 --max-tokens 300

WHAT THIS SCRIPT DOES:
    1. Loads config.json, model.safetensors and the tokenizer
    2. Prints model dimensions and packed-weight memory
    3. Streams each generated token as soon as it is sampled
    4. Ctrl-C during generation stops it after the current token
"""

import os
import sys
import argparse
import signal

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ternary_lm.config import GenerateConfig
from ternary_lm.engine import InferenceEngine, create_engine
from ternary_lm.utils import InferenceLogger, print_model_summary, set_seed


def stream_completion(engine: InferenceEngine, prompt: str, gen_config: GenerateConfig) -> None:
    """Generate one completion, printing tokens as they arrive."""
    last_stats = []

    def on_token(text, stats):
        print(text, end="", flush=True)
        last_stats[:] = [stats]

    # Ctrl-C asks the engine to stop instead of killing the process
    previous = signal.signal(signal.SIGINT, lambda signum, frame: engine.stop())
    try:
        engine.generate_sync(
            prompt,
            max_tokens=gen_config.max_tokens,
            on_token=on_token,
            temperature=gen_config.temperature,
        )
    finally:
        signal.signal(signal.SIGINT, previous)

    print()
    if last_stats:
        stats = last_stats[0]
        print(f"\n--- {stats.total_tokens} tokens in {stats.elapsed_ms / 1000:.2f}s "
              f"({stats.tokens_per_second:.1f} tok/s, {engine.stop_reason.value}) ---\n")


def interactive_loop(engine: InferenceEngine, gen_config: GenerateConfig) -> None:
    """Run an interactive generation loop."""
    print("\n" + "=" * 60)
    print("Interactive Text Generation")
    print("=" * 60)
    print(f"Backend: {engine.backend}")
    print(f"Temperature: {gen_config.temperature}")
    print(f"Max tokens: {gen_config.max_tokens}")
    print("\nType a prompt and press Enter. Type 'quit' to exit.")
    print("Type 'settings' to see generation parameters.")
    print("=" * 60 + "\n")

    while True:
        try:
            prompt = input(">>> ").strip()
        except (EOFError, KeyboardInterrupt):
            print("\nGoodbye!")
            break

        if not prompt:
            continue
        if prompt.lower() == "quit":
            print("Goodbye!")
            break
        if prompt.lower() == "settings":
            for key, value in gen_config.to_dict().items():
                print(f"  {key}: {value}")
            continue

        try:
            stream_completion(engine, prompt, gen_config)
        except ValueError as e:
            print(f"[error] {e}")


def main():
    parser = argparse.ArgumentParser(
        description="Generate text with a ternary-weight model",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    defaults = GenerateConfig()

    parser.add_argument(
        "--model-dir", type=str, required=True,
        help="Directory with config.json, model.safetensors and tokenizer.json/tokenizer.model"
    )
    parser.add_argument(
        "--prompt", type=str, default=None,
        help="Single prompt to generate from (if not provided, enters interactive mode)"
    )
    parser.add_argument(
        "--max-tokens", type=int, default=defaults.max_tokens,
        help="Maximum number of tokens to generate"
    )
    parser.add_argument(
        "--temperature", type=float, default=defaults.temperature,
        help="Sampling temperature (<=0 greedy, 1=default, >1=more random)"
    )
    parser.add_argument(
        "--backend", type=str, default=defaults.backend, choices=["cpu", "device"],
        help="cpu: packed weights decoded on demand; device: dense weights on the best device"
    )
    parser.add_argument(
        "--seed", type=int, default=defaults.seed,
        help="Seed for sampling (omit for nondeterministic output)"
    )
    parser.add_argument(
        "--log-dir", type=str, default=None,
        help="Also write log lines to a timestamped file in this directory"
    )
    parser.add_argument(
        "--summary", action="store_true",
        help="Print a per-tensor model summary after loading"
    )

    args = parser.parse_args()
    gen_config = GenerateConfig(
        max_tokens=args.max_tokens,
        temperature=args.temperature,
        seed=args.seed,
        backend=args.backend,
    )
    if gen_config.seed is not None:
        set_seed(gen_config.seed)

    logger = InferenceLogger(log_dir=args.log_dir)
    logger.log_info(f"Loading model from {args.model_dir}")
    engine = create_engine(
        args.model_dir,
        backend=gen_config.backend,
        seed=gen_config.seed,
        logger=logger,
        show_progress=True,
    )
    if args.summary:
        print_model_summary(engine.model)

    try:
        if args.prompt:
            stream_completion(engine, args.prompt, gen_config)
        else:
            interactive_loop(engine, gen_config)
    finally:
        logger.close()


if __name__ == "__main__":
    main()
