"""
LoRAForge Reference Base Model
==============================
A small, frozen, deterministic decoder-only transformer that implements the
base-model contract and the ActivationProvider. It lets the CLI and the
tests run a real training loop (real activations, real logits) without
downloading a checkpoint.

Architecture (per layer, pre-norm, single causal attention head):

    x ──► LayerNorm ──► q_proj, k_proj, v_proj ──► attention ──► o_proj ──(+)──►
    x ──► LayerNorm ──► gate_proj, up_proj ──► SiLU(gate)·up ──► down_proj ──(+)──►

Token embeddings plus sinusoidal positions go in; the LM head is tied to the
embedding matrix. All weights come from a seeded generator, so the same
(tokenizer, seed, sizes) always gives the same model.

The trainer asks for logits and activations one position at a time. One
forward pass over the whole sequence produces every position at once, and
the last sequence is cached, so asking for many positions of the same
sequence costs a single pass.

Usage:
    >>> tok = LoRAForgeTokenizer(vocab_size=1024)
    >>> tok.train(texts)
    >>> model = ReferenceBaseModel(tok, d_model=64, n_layers=2)
    >>> tokens = model.encode("Hello world")
    >>> model.logits_at(tokens, position=0).shape
    torch.Size([vocab_size])
"""

from __future__ import annotations

import logging
import math
from typing import Optional, Sequence

import torch
import torch.nn as nn
import torch.nn.functional as F

from loraforge.data.tokenizer import LoRAForgeTokenizer

logger = logging.getLogger(__name__)

ATTENTION_PROJECTIONS = ("q_proj", "k_proj", "v_proj", "o_proj")
FFN_PROJECTIONS = ("gate_proj", "up_proj", "down_proj")


def sinusoidal_positions(n_positions: int, d_model: int) -> torch.Tensor:
    """Fixed sinusoidal position table, shape (n_positions, d_model)."""
    pe = torch.zeros(n_positions, d_model)
    position = torch.arange(0, n_positions, dtype=torch.float).unsqueeze(1)
    div_term = torch.exp(
        torch.arange(0, d_model, 2).float() * (-math.log(10000.0) / d_model)
    )
    pe[:, 0::2] = torch.sin(position * div_term)
    pe[:, 1::2] = torch.cos(position * div_term[: d_model // 2])
    return pe


class ReferenceBlock(nn.Module):
    """One pre-norm transformer layer that records its projection inputs."""

    def __init__(self, d_model: int, d_ff: int):
        super().__init__()
        self.attn_norm = nn.LayerNorm(d_model)
        self.q_proj = nn.Linear(d_model, d_model, bias=False)
        self.k_proj = nn.Linear(d_model, d_model, bias=False)
        self.v_proj = nn.Linear(d_model, d_model, bias=False)
        self.o_proj = nn.Linear(d_model, d_model, bias=False)

        self.ffn_norm = nn.LayerNorm(d_model)
        self.gate_proj = nn.Linear(d_model, d_ff, bias=False)
        self.up_proj = nn.Linear(d_model, d_ff, bias=False)
        self.down_proj = nn.Linear(d_ff, d_model, bias=False)

    def forward(self, x: torch.Tensor, record: dict[str, torch.Tensor]) -> torch.Tensor:
        """
        Parameters
        ----------
        x : torch.Tensor
            Hidden states, shape (seq_len, d_model).
        record : dict
            Receives ``projection → input``, each of shape (seq_len, dim).
        """
        seq_len, d_model = x.shape

        h = self.attn_norm(x)
        for name in ("q_proj", "k_proj", "v_proj"):
            record[name] = h
        q, k, v = self.q_proj(h), self.k_proj(h), self.v_proj(h)

        scores = (q @ k.t()) / math.sqrt(d_model)
        causal = torch.triu(torch.ones(seq_len, seq_len, dtype=torch.bool), diagonal=1)
        scores = scores.masked_fill(causal, float("-inf"))
        attn = torch.softmax(scores, dim=-1) @ v
        record["o_proj"] = attn
        x = x + self.o_proj(attn)

        h = self.ffn_norm(x)
        record["gate_proj"] = h
        record["up_proj"] = h
        act = F.silu(self.gate_proj(h)) * self.up_proj(h)
        record["down_proj"] = act
        return x + self.down_proj(act)


class ReferenceBaseModel(nn.Module):
    """
    Frozen reference model over a trained LoRAForgeTokenizer.

    Parameters
    ----------
    tokenizer : LoRAForgeTokenizer
        Trained tokenizer; its vocabulary size fixes the LM head.
    d_model : int
        Hidden size (the adapter ``model_dim``).
    n_layers : int
        Number of layers (the adapter ``layer_count``).
    d_ff : int or None
        Feed-forward width. Defaults to ``d_model`` so that every projection
        is square and any target module can be adapted.
    max_seq_len : int
        Longest sequence the position table covers; longer encodings are
        truncated.
    seed : int
        Seed for every weight.
    """

    def __init__(
        self,
        tokenizer: LoRAForgeTokenizer,
        d_model: int = 64,
        n_layers: int = 2,
        d_ff: Optional[int] = None,
        max_seq_len: int = 2048,
        seed: int = 0,
    ):
        super().__init__()
        if d_model <= 0 or d_model % 2:
            raise ValueError(f"d_model must be a positive even number, got {d_model}")
        if n_layers <= 0:
            raise ValueError(f"n_layers must be positive, got {n_layers}")

        self.tokenizer = tokenizer
        self.d_model = d_model
        self.n_layers = n_layers
        self.d_ff = d_ff or d_model
        self.max_seq_len = max_seq_len
        self.vocab_size = tokenizer.actual_vocab_size

        self.embedding = nn.Embedding(self.vocab_size, d_model)
        self.register_buffer(
            "positions", sinusoidal_positions(max_seq_len, d_model), persistent=False
        )
        self.layers = nn.ModuleList(
            [ReferenceBlock(d_model, self.d_ff) for _ in range(n_layers)]
        )
        self.final_norm = nn.LayerNorm(d_model)

        self._init_weights(seed)
        self.requires_grad_(False)
        self.eval()

        self._cache_key: Optional[tuple[int, ...]] = None
        self._cache: Optional[tuple[torch.Tensor, list[dict[str, torch.Tensor]]]] = None

        logger.info(f"Reference base model ready: {self}")

    def _init_weights(self, seed: int) -> None:
        generator = torch.Generator().manual_seed(seed)
        with torch.no_grad():
            for name, param in self.named_parameters():
                if "norm" in name:
                    continue
                param.copy_(torch.randn(param.shape, generator=generator) * 0.02)

    # ─── Dimensions ─────────────────────────────────────────────────────

    @property
    def layer_count(self) -> int:
        return self.n_layers

    @property
    def model_dim(self) -> int:
        return self.d_model

    def projection_dims(self) -> dict[str, tuple[int, int]]:
        """``projection → (input_dim, output_dim)`` for every projection."""
        dims = {name: (self.d_model, self.d_model) for name in ATTENTION_PROJECTIONS}
        dims["gate_proj"] = (self.d_model, self.d_ff)
        dims["up_proj"] = (self.d_model, self.d_ff)
        dims["down_proj"] = (self.d_ff, self.d_model)
        return dims

    # ─── Base-model contract ────────────────────────────────────────────

    def encode(self, text: str) -> list[int]:
        return self.tokenizer.encode(text, max_length=self.max_seq_len)

    def logits_at(self, tokens: Sequence[int], position: int) -> torch.Tensor:
        logits, _ = self._run(tokens)
        return logits[position]

    def input_activation(
        self,
        layer: int,
        projection: str,
        tokens: Sequence[int],
        position: int,
    ) -> torch.Tensor:
        if not 0 <= layer < self.n_layers:
            raise IndexError(f"layer {layer} out of range [0, {self.n_layers})")
        _, records = self._run(tokens)
        if projection not in records[layer]:
            raise KeyError(f"Unknown projection '{projection}'")
        return records[layer][projection][position]

    # ─── Forward ────────────────────────────────────────────────────────

    @torch.no_grad()
    def _run(
        self, tokens: Sequence[int]
    ) -> tuple[torch.Tensor, list[dict[str, torch.Tensor]]]:
        key = tuple(int(t) for t in tokens)
        if key == self._cache_key:
            return self._cache

        if not key:
            raise ValueError("Cannot run the base model on an empty sequence")
        if len(key) > self.max_seq_len:
            raise ValueError(
                f"Sequence of {len(key)} tokens exceeds max_seq_len={self.max_seq_len}"
            )

        ids = torch.tensor(key, dtype=torch.long)
        x = self.embedding(ids) + self.positions[: len(key)]

        records = []
        for block in self.layers:
            record: dict[str, torch.Tensor] = {}
            x = block(x, record)
            records.append(record)

        logits = self.final_norm(x) @ self.embedding.weight.t()

        self._cache_key = key
        self._cache = (logits, records)
        return self._cache

    @property
    def n_params(self) -> int:
        return sum(p.numel() for p in self.parameters())

    def __repr__(self) -> str:
        return (
            f"ReferenceBaseModel(vocab={self.vocab_size}, d_model={self.d_model}, "
            f"layers={self.n_layers}, d_ff={self.d_ff}, params={self.n_params:,})"
        )
