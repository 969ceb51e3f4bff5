"""
LoRAForge Training Metrics
==========================
Loss math for the masked span, perplexity, and timing helpers.

1. MASKED-SPAN CROSS-ENTROPY
   For one scored position with adjusted logits z and true next token t:

       p      = softmax(z)
       loss   = -log(max(p[t], 1e-8))
       dL/dz  = p - onehot(t)

   The 1e-8 floor keeps the loss finite when the model assigns (numerically)
   zero probability to the target. The gradient is not clamped.

2. PERPLEXITY
       PPL = exp(average loss per scored token)

   PPL=1 means every target token was predicted with certainty; PPL equal
   to the vocabulary size means the model is guessing uniformly.

Usage:
    >>> loss, grad = cross_entropy_with_grad(logits, target=42)
    >>> ppl = perplexity(mean_loss)
"""

from __future__ import annotations

import logging
import math
import time
import tracemalloc

import torch

logger = logging.getLogger(__name__)

PROB_FLOOR = 1e-8


def cross_entropy_with_grad(logits: torch.Tensor, target: int) -> tuple[float, torch.Tensor]:
    """
    Cross-entropy of one position and its gradient with respect to the
    logits.

    Parameters
    ----------
    logits : torch.Tensor
        Adjusted logits, shape (vocab_size,).
    target : int
        Index of the true next token.

    Returns
    -------
    (float, torch.Tensor)
        The floored loss and ``softmax(logits) - onehot(target)``.
    """
    probs = torch.softmax(logits.to(torch.float32), dim=0)
    loss = -math.log(max(probs[target].item(), PROB_FLOOR))

    grad = probs.clone()
    grad[target] -= 1.0
    return loss, grad


def perplexity(mean_loss: float) -> float:
    """``exp(mean_loss)``, or inf when that would overflow."""
    if mean_loss > 100:
        logger.warning(
            f"Average loss ({mean_loss:.2f}) is very high. "
            f"Perplexity will be astronomical."
        )
        return float("inf")
    return math.exp(mean_loss)


class MemoryTracker:
    """
    Context manager recording peak Python-level memory of a block.

    Usage:
        >>> with MemoryTracker("Training") as tracker:
        ...     trainer.train(samples)
        >>> print(f"Peak: {tracker.peak_mb:.1f} MB")
    """

    def __init__(self, label: str = "operation"):
        self.label = label
        self.peak_mb: float = 0.0
        self.current_mb: float = 0.0
        self.duration_seconds: float = 0.0
        self._start_time: float = 0.0

    def __enter__(self):
        tracemalloc.start()
        self._start_time = time.time()
        return self

    def __exit__(self, *args):
        current, peak = tracemalloc.get_traced_memory()
        tracemalloc.stop()

        self.current_mb = current / (1024 * 1024)
        self.peak_mb = peak / (1024 * 1024)
        self.duration_seconds = time.time() - self._start_time

        logger.info(
            f"[{self.label}] Memory: peak={self.peak_mb:.1f}MB, "
            f"time={self.duration_seconds:.2f}s"
        )


class Timer:
    """
    Context manager for timing a block.

    Usage:
        >>> with Timer("Conversion") as t:
        ...     convert()
        >>> print(f"Took: {t.elapsed:.2f}s")
    """

    def __init__(self, label: str = "operation"):
        self.label = label
        self.elapsed: float = 0.0
        self._start: float = 0.0

    def __enter__(self):
        self._start = time.time()
        return self

    def __exit__(self, *args):
        self.elapsed = time.time() - self._start
        logger.info(f"[{self.label}] Time: {self.elapsed:.2f}s")
