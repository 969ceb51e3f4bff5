"""
LoRAForge Base-Model Contract
=============================
What the trainer needs from the frozen model it adapts.

    BaseModel            encode(text) → token ids
                         logits_at(tokens, position) → next-token logits
    ActivationProvider   input_activation(layer, projection, tokens, position)
                         → the vector entering that projection at that position

Any object with these methods works; nothing needs to inherit from the
protocols. A base model that also implements ``input_activation`` is its own
activation provider.

When no provider is available, GaussianActivationProvider stands in with
random vectors. Training then runs and checkpoints normally, but the
gradients say nothing about the real model.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, Sequence, runtime_checkable

import torch

logger = logging.getLogger(__name__)


@runtime_checkable
class BaseModel(Protocol):
    def encode(self, text: str) -> list[int]:
        ...

    def logits_at(self, tokens: Sequence[int], position: int) -> torch.Tensor:
        ...


@runtime_checkable
class ActivationProvider(Protocol):
    def input_activation(
        self,
        layer: int,
        projection: str,
        tokens: Sequence[int],
        position: int,
    ) -> torch.Tensor:
        ...


class GaussianActivationProvider:
    """
    Placeholder activations drawn from N(0, std^2).

    Parameters
    ----------
    model_dim : int
        Length of every returned vector.
    std : float
        Standard deviation of the draws.
    seed : int or None
        Seed for reproducible draws.
    """

    def __init__(self, model_dim: int, std: float = 0.1, seed: Optional[int] = None):
        if model_dim <= 0:
            raise ValueError(f"model_dim must be positive, got {model_dim}")
        self.model_dim = model_dim
        self.std = std
        self._generator = torch.Generator()
        if seed is not None:
            self._generator.manual_seed(seed)
        else:
            self._generator.seed()

    def input_activation(
        self,
        layer: int,
        projection: str,
        tokens: Sequence[int],
        position: int,
    ) -> torch.Tensor:
        return torch.randn(self.model_dim, generator=self._generator) * self.std

    def __repr__(self) -> str:
        return f"GaussianActivationProvider(model_dim={self.model_dim}, std={self.std})"
