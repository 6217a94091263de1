"""
Export a randomly initialized ternary model for smoke tests.

USAGE:
    python scripts/export_random_model.py --out-dir models/random-tiny
    python scripts/generate_text.py --model-dir models/random-tiny \
        --prompt "the cat" --max-tokens 20

The output is gibberish (the weights are random), but it exercises the
whole path: packing, safetensors export, loading, tokenization, prefill,
decode and streaming.

WHAT GETS WRITTEN:
    out_dir/
      ├── config.json
      ├── model.safetensors   ← random Normal weights, absmean-quantized
      └── tokenizer.json      ← character-level BPE with a few merges
"""

import os
import sys
import argparse
import json
import string

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ternary_lm.config import ModelConfig
from ternary_lm.quantize import random_ternary_model, save_model
from ternary_lm.tokenizer import WHITESPACE_MARKER


# A handful of merges so encoding is not purely character-level
MERGES = [("t", "h"), ("th", "e"), (WHITESPACE_MARKER, "t"), (WHITESPACE_MARKER + "t", "he"), ("a", "n"), ("an", "d")]


def build_tokenizer_json() -> dict:
    """A HuggingFace-format BPE tokenizer over printable ASCII."""
    symbols = ["<unk>"]
    chars = string.ascii_letters + string.digits + string.punctuation
    symbols.extend(chars)
    symbols.extend(WHITESPACE_MARKER + c for c in chars)
    symbols.append(WHITESPACE_MARKER)
    for a, b in MERGES:
        if a + b not in symbols:
            symbols.append(a + b)
    return {
        "version": "1.0",
        "model": {
            "type": "BPE",
            "unk_token": "<unk>",
            "vocab": {s: i for i, s in enumerate(symbols)},
            "merges": [f"{a} {b}" for a, b in MERGES],
        },
    }


def main():
    parser = argparse.ArgumentParser(
        description="Write a random ternary model directory",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--out-dir", type=str, required=True, help="Output directory")
    parser.add_argument("--dim", type=int, default=128, help="Model width")
    parser.add_argument("--n-layers", type=int, default=4, help="Number of blocks")
    parser.add_argument("--n-heads", type=int, default=4, help="Query heads")
    parser.add_argument("--n-kv-heads", type=int, default=2, help="Key/value heads")
    parser.add_argument("--max-seq-len", type=int, default=256, help="Context length")
    parser.add_argument("--hidden-dim", type=int, default=None, help="FFN width (default ≈ 8/3 · dim)")
    parser.add_argument("--seed", type=int, default=0, help="Weight initialization seed")
    args = parser.parse_args()

    tokenizer_json = build_tokenizer_json()
    config = ModelConfig(
        vocab_size=len(tokenizer_json["model"]["vocab"]),
        dim=args.dim,
        n_layers=args.n_layers,
        n_heads=args.n_heads,
        n_kv_heads=args.n_kv_heads,
        max_seq_len=args.max_seq_len,
    )
    config.validate()

    print(f"Building random model: {config.dim}d, {config.n_layers}L, "
          f"{config.n_heads}H, {config.n_kv_heads}KV, vocab {config.vocab_size}")
    tensors = random_ternary_model(config, hidden_dim=args.hidden_dim, seed=args.seed)

    save_model(args.out_dir, config, tensors, metadata={"format": "pt", "source": "random"})
    with open(os.path.join(args.out_dir, "tokenizer.json"), "w", encoding="utf-8") as f:
        json.dump(tokenizer_json, f, ensure_ascii=False, indent=2)

    print(f"Wrote {len(tensors)} tensors to {args.out_dir}")


if __name__ == "__main__":
    main()
