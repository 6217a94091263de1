"""
Tokenizers: HuggingFace-format BPE (tokenizer.json) and SentencePiece.

A tokenizer converts raw text into token IDs the model can process, and
converts sampled IDs back into text, ONE TOKEN AT A TIME during streaming.

  Example:
    "Once upon a time" → [412, 876, 12, 345]   (encode)
    876                → " upon"                (decode_token)

THE TOKENIZER CONTRACT (what the engine relies on):
  encode(text)        → list[int]
  decode_token(id)    → str, the surface text of one token
  decode(ids)         → str
  vocab_size          → int

  Both tokenizers below satisfy it, so the engine never needs to know
  which one it was given.

BPE (BYTE-PAIR ENCODING) AT INFERENCE TIME:
  Training learned an ordered list of MERGES. Encoding a word replays
  them:
    1. Start with the word's individual characters
    2. Find the adjacent pair with the LOWEST merge rank
    3. Merge it into one symbol
    4. Repeat until no adjacent pair has a rank

  Example with merges [("t","h"), ("th","e")]:
    "the" → t h e → th e → the

WHITESPACE MARKER (Ġ):
  HuggingFace byte-level BPE stores "a word that follows whitespace" with
  a leading Ġ (U+0120). Pre-tokenization splits on space/newline/tab and
  prefixes every word after the first with Ġ. Decoding turns every Ġ back
  into a space. Runs of whitespace collapse to a single marker, and
  leading whitespace before the first word is dropped.

UNKNOWN SYMBOLS:
  A symbol left after merging that is not in the vocabulary maps to the
  unk token's ID (model.unk_token, default "<unk>"; ID 0 if absent).
  Decoding an ID outside the vocabulary yields the empty string.
"""

import json
import os
from typing import Dict, List, Optional, Sequence, Tuple, Union

import sentencepiece as spm

WHITESPACE_MARKER = "Ġ"
SENTENCEPIECE_MARKER = "▁"
_WHITESPACE = (" ", "\n", "\t")


# ═══════════════════════════════════════════════════════════════════════════
# BPE (tokenizer.json)
# ═══════════════════════════════════════════════════════════════════════════

class BPETokenizer:
    """
    Byte-pair encoding tokenizer loaded from a HuggingFace tokenizer.json.

    USAGE:
      tokenizer = BPETokenizer.from_file("my_model/tokenizer.json")
      ids = tokenizer.encode("Once upon a time")
      text = "".join(tokenizer.decode_token(i) for i in ids)
    """

    def __init__(
        self,
        vocab: Dict[str, int],
        merges: Sequence[Tuple[str, str]],
        unk_token: str = "<unk>",
    ):
        """
        Args:
            vocab: Token string → ID.
            merges: Ordered merge rules; earlier merges win.
            unk_token: Token used for symbols missing from the vocabulary.
        """
        self.vocab = dict(vocab)
        self.merges = [tuple(m) for m in merges]
        self.decoder = {token_id: token for token, token_id in self.vocab.items()}
        self.unk_token = unk_token
        self.unk_id = self.vocab.get(unk_token, 0)

        # "a b" → rank, so the best pair can be found with one dict lookup
        self.merge_ranks = {f"{a} {b}": rank for rank, (a, b) in enumerate(self.merges)}

    @classmethod
    def from_json(cls, data: dict) -> "BPETokenizer":
        """
        Build from the parsed contents of a tokenizer.json.

        Merges may be stored as ["a", "b"] pairs or as "a b" strings.
        Entries in any other form are skipped.

        Raises:
            ValueError: if the file does not describe a BPE model.
        """
        model = data.get("model") if isinstance(data, dict) else None
        if not model or model.get("type") != "BPE":
            raise ValueError("Expected a BPE tokenizer (model.type == 'BPE')")

        merges: List[Tuple[str, str]] = []
        for merge in model.get("merges") or []:
            if isinstance(merge, (list, tuple)) and len(merge) == 2:
                merges.append((merge[0], merge[1]))
            elif isinstance(merge, str):
                parts = merge.split(" ")
                if len(parts) == 2:
                    merges.append((parts[0], parts[1]))

        return cls(
            vocab=model.get("vocab") or {},
            merges=merges,
            unk_token=model.get("unk_token") or "<unk>",
        )

    @classmethod
    def from_file(cls, path: str) -> "BPETokenizer":
        """Load a tokenizer.json from disk."""
        if not os.path.exists(path):
            raise FileNotFoundError(f"Tokenizer not found: {path}")
        with open(path, "r", encoding="utf-8") as f:
            return cls.from_json(json.load(f))

    # ── Encoding ───────────────────────────────────────────────────────────

    @staticmethod
    def pre_tokenize(text: str) -> List[str]:
        """
        Split on whitespace, marking every word after the first with Ġ.

          "Once upon  a"  → ["Once", "Ġupon", "Ġa"]
        """
        words: List[str] = []
        current = ""
        at_word_start = True
        for char in text:
            if char in _WHITESPACE:
                if current:
                    words.append(current)
                    current = ""
                at_word_start = True
            else:
                if at_word_start and words:
                    current = WHITESPACE_MARKER + char
                else:
                    current += char
                at_word_start = False
        if current:
            words.append(current)
        return words

    def _merge_word(self, word: str) -> List[str]:
        symbols = list(word)
        while len(symbols) > 1:
            # ── Find the adjacent pair with the lowest merge rank ──────────
            best_idx = -1
            best_rank = None
            for i in range(len(symbols) - 1):
                rank = self.merge_ranks.get(f"{symbols[i]} {symbols[i + 1]}")
                if rank is not None and (best_rank is None or rank < best_rank):
                    best_rank = rank
                    best_idx = i
            if best_idx == -1:
                break
            symbols[best_idx:best_idx + 2] = [symbols[best_idx] + symbols[best_idx + 1]]
        return symbols

    def encode(self, text: str) -> List[int]:
        """Encode text into token IDs. Empty text encodes to []."""
        ids: List[int] = []
        for word in self.pre_tokenize(text):
            ids.extend(self.vocab.get(s, self.unk_id) for s in self._merge_word(word))
        return ids

    # ── Decoding ───────────────────────────────────────────────────────────

    def decode_token(self, token_id: int) -> str:
        """Surface text of a single token, with Ġ turned back into a space."""
        return self.decoder.get(int(token_id), "").replace(WHITESPACE_MARKER, " ")

    def decode(self, ids: Sequence[int]) -> str:
        text = "".join(self.decoder.get(int(i), "") for i in ids)
        return text.replace(WHITESPACE_MARKER, " ")

    def token_to_id(self, token: str) -> int:
        return self.vocab.get(token, self.unk_id)

    def id_to_token(self, token_id: int) -> str:
        return self.decoder.get(int(token_id), "")

    @property
    def vocab_size(self) -> int:
        return len(self.vocab)

    def __len__(self) -> int:
        return self.vocab_size


# ═══════════════════════════════════════════════════════════════════════════
# SentencePiece (tokenizer.model)
# ═══════════════════════════════════════════════════════════════════════════

class SentencePieceTokenizer:
    """
    Wrapper around a trained SentencePiece model.

    SentencePiece marks "follows a space" with ▁ (U+2581) at the start of a
    piece, the same role Ġ plays in byte-level BPE. decode_token() maps it
    to a space so streamed pieces concatenate into readable text.

    TOKEN ID LAYOUT (LLaMA-style models):
      0   : <unk>
      1   : <s>    (BOS)
      2   : </s>   (EOS)
      3.. : byte tokens and learned pieces
    """

    def __init__(self, model_path: str):
        """
        Raises:
            FileNotFoundError: If the model file doesn't exist.
        """
        if not os.path.exists(model_path):
            raise FileNotFoundError(f"Tokenizer model not found: {model_path}")
        self._sp = spm.SentencePieceProcessor()
        self._sp.Load(model_path)

    def encode(self, text: str, bos: bool = False) -> List[int]:
        """
        Encode text into token IDs.

        Args:
            text: The input text string.
            bos: If True, prepend the BOS token. Off by default: the engine
                 feeds exactly what the tokenizer returns.
        """
        tokens = self._sp.Encode(text)
        if bos and self.bos_id >= 0:
            tokens = [self.bos_id] + tokens
        return tokens

    def decode_token(self, token_id: int) -> str:
        """Surface text of a single piece; control tokens decode to ''."""
        token_id = int(token_id)
        if token_id < 0 or token_id >= self.vocab_size or self._sp.IsControl(token_id):
            return ""
        return self._sp.IdToPiece(token_id).replace(SENTENCEPIECE_MARKER, " ")

    def decode(self, ids: Sequence[int]) -> str:
        return self._sp.Decode([int(i) for i in ids])

    @property
    def vocab_size(self) -> int:
        return self._sp.GetPieceSize()

    @property
    def bos_id(self) -> int:
        return self._sp.bos_id()

    @property
    def eos_id(self) -> int:
        return self._sp.eos_id()

    def __len__(self) -> int:
        return self.vocab_size


Tokenizer = Union[BPETokenizer, SentencePieceTokenizer]


def load_tokenizer(base_path: str) -> Tokenizer:
    """
    Load the tokenizer stored next to a model.

    Looks for tokenizer.json first (BPE), then tokenizer.model
    (SentencePiece).

    Raises:
        FileNotFoundError: if neither file exists.
    """
    json_path = os.path.join(base_path, "tokenizer.json")
    if os.path.exists(json_path):
        return BPETokenizer.from_file(json_path)
    sp_path = os.path.join(base_path, "tokenizer.model")
    if os.path.exists(sp_path):
        return SentencePieceTokenizer(sp_path)
    raise FileNotFoundError(
        f"No tokenizer found in {base_path} (expected tokenizer.json or tokenizer.model)"
    )
