"""
Shared fixtures: tiny deterministic stand-ins for a base model.
"""

import sys
from pathlib import Path

import pytest
import torch

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


class CharBaseModel:
    """
    One token per character. Base logits are all zero (uniform next-token
    distribution); activations are a fixed random embedding of the token at
    the position, scaled per layer.
    """

    def __init__(self, vocab_size: int = 64, model_dim: int = 8, seed: int = 0):
        self.vocab_size = vocab_size
        self.model_dim = model_dim
        generator = torch.Generator().manual_seed(seed)
        self.table = torch.randn(vocab_size, model_dim, generator=generator)

    def encode(self, text):
        return [ord(c) % self.vocab_size for c in text]

    def logits_at(self, tokens, position):
        return torch.zeros(self.vocab_size)

    def input_activation(self, layer, projection, tokens, position):
        return self.table[tokens[position]] * (layer + 1)


class LogitsOnlyModel:
    """Implements only the two required base-model calls."""

    def __init__(self, vocab_size: int = 32):
        self.vocab_size = vocab_size

    def encode(self, text):
        return [ord(c) % self.vocab_size for c in text]

    def logits_at(self, tokens, position):
        return [0.0] * self.vocab_size


@pytest.fixture
def char_model():
    return CharBaseModel()


@pytest.fixture
def logits_only_model():
    return LogitsOnlyModel()


@pytest.fixture
def tiny_config(tmp_path):
    """Smoke-test config writing into a temporary directory."""
    from loraforge.config import LoRAForgeConfig

    config = LoRAForgeConfig.for_smoke_test()
    config.adapter.target_modules = ["q_proj"]
    config.training.output_dir = str(tmp_path / "out")
    config.training.log_every = 1
    return config


@pytest.fixture
def samples():
    from loraforge.data.sample import completion_format

    return [
        completion_format("abc", "def"),
        completion_format("ghi", "jkl"),
        completion_format("mno", "pqr"),
        completion_format("stu", "vwx"),
    ]
