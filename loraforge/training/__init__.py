"""Training loop and loss metrics."""

from loraforge.training.metrics import (
    MemoryTracker,
    Timer,
    cross_entropy_with_grad,
    perplexity,
)
from loraforge.training.trainer import LoRATrainer

__all__ = [
    "LoRATrainer",
    "MemoryTracker",
    "Timer",
    "cross_entropy_with_grad",
    "perplexity",
]
