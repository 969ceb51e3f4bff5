"""
LoRAForge Tokenizer
===================
A small byte-level BPE tokenizer for the reference base model.

Real deployments bring their own base model and with it their own
tokenizer; this one exists so the engine can be exercised end to end
without downloading anything. It is trained on the fine-tuning corpus
itself and knows the prompt-format markers as single tokens.

How BPE Works (Simple Analogy):
    Start by knowing every individual byte. Notice "th" appears very often,
    so give it a single symbol. Then "the" becomes one symbol too. Keep
    merging the most frequent pairs until the vocabulary is full: common
    words end up as one or two symbols, rare words as several pieces.

Usage:
    >>> tok = LoRAForgeTokenizer(vocab_size=1024)
    >>> tok.train(texts=[s.full_text for s in samples])
    >>> ids = tok.encode("Hello world")
    >>> text = tok.decode(ids)
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Union

from tokenizers import Tokenizer, decoders, models, pre_tokenizers, trainers

from loraforge.data.sample import END_OF_TEXT, IM_END, IM_START, START_OF_TARGET, START_OF_TEXT

logger = logging.getLogger(__name__)

PAD_TOKEN = "<pad>"
UNK_TOKEN = "<unk>"

SPECIAL_TOKENS = [
    PAD_TOKEN,
    UNK_TOKEN,
    START_OF_TEXT,
    START_OF_TARGET,
    END_OF_TEXT,
    IM_START,
    IM_END,
]


class LoRAForgeTokenizer:
    """
    Byte-level BPE tokenizer.

    Encoding never adds special tokens on its own: the masked-span loss
    relies on ``encode(input)`` being a prefix-length measure of
    ``encode(input + target)``.

    Attributes
    ----------
    vocab_size : int
        Target vocabulary size.
    """

    def __init__(self, vocab_size: int = 4096):
        if vocab_size < len(SPECIAL_TOKENS):
            raise ValueError(
                f"vocab_size ({vocab_size}) must be at least "
                f"{len(SPECIAL_TOKENS)} to fit special tokens."
            )

        self.vocab_size = vocab_size
        self._tokenizer: Optional[Tokenizer] = None

    @property
    def tokenizer(self) -> Tokenizer:
        """Access the underlying tokenizer, raising if not initialized."""
        if self._tokenizer is None:
            raise RuntimeError(
                "Tokenizer not initialized. Call train() or load() first."
            )
        return self._tokenizer

    # ─── Training ───────────────────────────────────────────────────────

    def train(self, texts: list[str], min_frequency: int = 2) -> None:
        """
        Train the BPE merges on ``texts``.

        Raises
        ------
        ValueError
            If texts is empty or contains only whitespace.
        """
        non_empty = [t for t in texts if t and t.strip()]
        if not non_empty:
            raise ValueError("Cannot train tokenizer on empty text list.")

        logger.info(
            f"Training BPE tokenizer (vocab_size={self.vocab_size}) "
            f"on {len(non_empty):,} texts..."
        )

        self._tokenizer = Tokenizer(models.BPE(unk_token=UNK_TOKEN))
        self._tokenizer.pre_tokenizer = pre_tokenizers.ByteLevel(
            add_prefix_space=False
        )
        self._tokenizer.decoder = decoders.ByteLevel()

        trainer = trainers.BpeTrainer(
            vocab_size=self.vocab_size,
            min_frequency=min_frequency,
            special_tokens=SPECIAL_TOKENS,
            show_progress=False,
            initial_alphabet=pre_tokenizers.ByteLevel.alphabet(),
        )
        self._tokenizer.train_from_iterator(non_empty, trainer=trainer)

        logger.info(
            f"Tokenizer trained. Actual vocab size: {self.actual_vocab_size} "
            f"(target: {self.vocab_size})"
        )

    # ─── Encoding / Decoding ────────────────────────────────────────────

    def encode(self, text: str, max_length: Optional[int] = None) -> list[int]:
        """
        Encode ``text`` into token IDs, optionally truncated to
        ``max_length``.
        """
        if not isinstance(text, str):
            raise TypeError(f"Expected str, got {type(text).__name__}")
        if not text:
            return []

        ids = self.tokenizer.encode(text, add_special_tokens=False).ids
        if max_length is not None:
            ids = ids[:max_length]
        return ids

    def decode(self, ids: list[int], skip_special_tokens: bool = False) -> str:
        if not ids:
            return ""
        return self.tokenizer.decode(ids, skip_special_tokens=skip_special_tokens)

    @property
    def pad_id(self) -> int:
        return self.tokenizer.token_to_id(PAD_TOKEN)

    @property
    def actual_vocab_size(self) -> int:
        """Actual vocabulary size after training (may differ from target)."""
        return self.tokenizer.get_vocab_size()

    # ─── Save / Load ────────────────────────────────────────────────────

    def save(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.tokenizer.save(str(path))
        logger.info(f"Tokenizer saved to {path}")

    def load(self, path: Union[str, Path]) -> None:
        """
        Load a previously trained tokenizer.

        Raises
        ------
        FileNotFoundError
            If the tokenizer file does not exist.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Tokenizer file not found: {path}")

        self._tokenizer = Tokenizer.from_file(str(path))
        logger.info(
            f"Tokenizer loaded from {path} "
            f"(vocab_size={self.actual_vocab_size})"
        )

    def __repr__(self) -> str:
        status = "trained" if self._tokenizer is not None else "not trained"
        size = self.actual_vocab_size if self._tokenizer else "N/A"
        return f"LoRAForgeTokenizer(vocab_size={size}, status={status})"
