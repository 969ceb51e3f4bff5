"""
LoRAForge Configuration System
===============================
Centralized configuration for the adapter training engine using Python
dataclasses. Every hyperparameter and path of a training run lives here.

Two groups of settings:
    - AdapterConfig  — WHAT is trained (rank, alpha, dropout, targets)
    - TrainingConfig — HOW it is trained (epochs, batches, optimizer, output)

Usage:
    # Load from YAML file:
    >>> config = LoRAForgeConfig.from_yaml("configs/default.yaml")

    # Create programmatically:
    >>> config = LoRAForgeConfig(
    ...     adapter=AdapterConfig(rank=8, alpha=16.0),
    ...     training=TrainingConfig(learning_rate=1e-4),
    ... )

    # Save to YAML:
    >>> config.to_yaml("configs/my_run.yaml")
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional

import numpy as np
import yaml

from loraforge.errors import ConfigurationError

logger = logging.getLogger(__name__)

# adapter.lora.alpha is stored as float32
FLOAT32_MAX = float(np.finfo(np.float32).max)


# =============================================================================
# Adapter Configuration
# =============================================================================

@dataclass
class AdapterConfig:
    """
    Shape and behaviour of the low-rank adapters.

    Analogy: If the frozen base model is a finished building, the adapter
    is a set of thin extension panels bolted onto some of its walls. These
    parameters decide how thick each panel is (rank), how strongly it
    pushes on the wall (alpha), and which walls get one (target_modules).

    Parameters
    ----------
    rank : int
        Inner dimension r shared by A (r x in) and B (out x r).
        Higher rank = more capacity, more parameters.
        Typical values: 4, 8, 16, 64.

    alpha : float
        Scalar multiplier applied to B·A·x before it is added to the base
        output.

    dropout : float
        Inverted-dropout probability applied to the adapter input during
        training. Must be in [0, 1).

    target_modules : list[str]
        Projection names to adapt in every layer. HuggingFace-style names
        (q_proj, k_proj, v_proj, o_proj, gate_proj, up_proj, down_proj) are
        mapped to their GGUF tensor names; anything else is used verbatim.

    max_sequence_length : int
        Token sequences longer than this are truncated before scoring.

    gradient_checkpointing : bool
        Accepted for compatibility with adapter configs produced elsewhere.
        Has no effect: activations are never stored across positions.
    """
    rank: int = 16
    alpha: float = 32.0
    dropout: float = 0.1
    target_modules: list[str] = field(
        default_factory=lambda: ["q_proj", "k_proj", "v_proj", "o_proj"]
    )
    max_sequence_length: int = 2048
    gradient_checkpointing: bool = True

    def validate(self) -> None:
        """
        Check that all adapter parameters are valid.

        Raises
        ------
        ConfigurationError
            If any parameter is out of range.
        """
        if self.rank <= 0:
            raise ConfigurationError(f"rank must be positive, got {self.rank}")
        if not self.alpha > 0 or not math.isfinite(self.alpha):
            raise ConfigurationError(
                f"alpha must be a positive finite number, got {self.alpha}"
            )
        if self.alpha > FLOAT32_MAX:
            raise ConfigurationError(
                f"alpha must fit in float32 (<= {FLOAT32_MAX:.4g}), got {self.alpha}"
            )
        if not 0.0 <= self.dropout < 1.0:
            raise ConfigurationError(
                f"dropout must be in [0, 1), got {self.dropout}"
            )
        if not self.target_modules:
            raise ConfigurationError(
                "target_modules is empty. Name at least one projection "
                "(e.g. q_proj) to adapt."
            )
        if len(set(self.target_modules)) != len(self.target_modules):
            raise ConfigurationError(
                f"target_modules contains duplicates: {self.target_modules}"
            )
        if self.max_sequence_length <= 0:
            raise ConfigurationError(
                f"max_sequence_length must be positive, "
                f"got {self.max_sequence_length}"
            )


# =============================================================================
# Training Configuration
# =============================================================================

@dataclass
class TrainingConfig:
    """
    Hyperparameters for the training process.

    Parameters
    ----------
    epochs : int
        Number of full passes over the training samples.

    batch_size : int
        Samples per optimizer step. The last batch of an epoch may be
        smaller.

    learning_rate : float
        Adam step size.

    weight_decay : float
        Accepted but not applied by the optimizer step.

    warmup_steps : int
        Accepted but not applied; the learning rate is constant.

    save_steps : int
        Write an interim checkpoint every N optimizer steps.

    output_dir : str
        Directory for all checkpoint files.

    beta1, beta2, epsilon : float
        Adam moment decay rates and denominator epsilon.

    seed : int or None
        Seed for adapter initialization, dropout masks and shuffling.
        None = nondeterministic.

    log_every : int
        Log the batch loss every N optimizer steps. 0 disables.

    architecture : str
        Value written to ``general.architecture`` in adapter containers.

    progress_bar : bool
        Show a tqdm progress bar over batches.
    """
    epochs: int = 3
    batch_size: int = 4
    learning_rate: float = 2e-4
    weight_decay: float = 0.01
    warmup_steps: int = 100
    save_steps: int = 500
    output_dir: str = "./lora_output"
    beta1: float = 0.9
    beta2: float = 0.999
    epsilon: float = 1e-8
    seed: Optional[int] = 42
    log_every: int = 100
    architecture: str = "llama"
    progress_bar: bool = False

    def validate(self) -> None:
        """Validate training parameters."""
        if self.epochs < 1:
            raise ConfigurationError(f"epochs must be >= 1, got {self.epochs}")
        if self.batch_size < 1:
            raise ConfigurationError(
                f"batch_size must be >= 1, got {self.batch_size}"
            )
        if not self.learning_rate > 0:
            raise ConfigurationError(
                f"learning_rate must be positive, got {self.learning_rate}"
            )
        if self.weight_decay < 0:
            raise ConfigurationError(
                f"weight_decay must be >= 0, got {self.weight_decay}"
            )
        if self.warmup_steps < 0:
            raise ConfigurationError(
                f"warmup_steps must be >= 0, got {self.warmup_steps}"
            )
        if self.save_steps < 1:
            raise ConfigurationError(
                f"save_steps must be >= 1, got {self.save_steps}"
            )
        if not self.output_dir:
            raise ConfigurationError("output_dir must not be empty")
        for name in ("beta1", "beta2"):
            value = getattr(self, name)
            if not 0.0 <= value < 1.0:
                raise ConfigurationError(f"{name} must be in [0, 1), got {value}")
        if not self.epsilon > 0:
            raise ConfigurationError(
                f"epsilon must be positive, got {self.epsilon}"
            )


# =============================================================================
# Master Configuration
# =============================================================================

@dataclass
class LoRAForgeConfig:
    """
    Master configuration combining adapter and training settings.

    Usage:
        >>> config = LoRAForgeConfig.from_yaml("configs/default.yaml")
        >>> config = LoRAForgeConfig()
        >>> config.validate()
        >>> config.to_yaml("configs/my_run.yaml")
    """
    adapter: AdapterConfig = field(default_factory=AdapterConfig)
    training: TrainingConfig = field(default_factory=TrainingConfig)

    def validate(self) -> None:
        """
        Validate all sub-configurations.

        Raises
        ------
        ConfigurationError
            If any parameter is invalid.
        """
        self.adapter.validate()
        self.training.validate()

        if self.training.weight_decay or self.training.warmup_steps:
            logger.debug(
                "weight_decay and warmup_steps are accepted but not applied "
                "by the optimizer"
            )

        logger.info(
            f"Config validated: rank={self.adapter.rank}, "
            f"alpha={self.adapter.alpha}, "
            f"targets={','.join(self.adapter.target_modules)}"
        )

    @classmethod
    def from_yaml(cls, path: str | Path) -> LoRAForgeConfig:
        """
        Load configuration from a YAML file.

        Parameters
        ----------
        path : str or Path
            Path to the YAML configuration file.

        Returns
        -------
        LoRAForgeConfig
            Loaded and validated configuration.

        Raises
        ------
        FileNotFoundError
            If the YAML file does not exist.
        ConfigurationError
            If the file is empty or holds unknown keys.
        """
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(
                f"Config file not found: {path}. "
                f"Create one from configs/default.yaml as a template."
            )

        with open(path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f)

        if raw is None:
            raise ConfigurationError(f"Config file is empty: {path}")

        try:
            config = cls(
                adapter=AdapterConfig(**raw.get("adapter", {})),
                training=TrainingConfig(**raw.get("training", {})),
            )
        except TypeError as e:
            raise ConfigurationError(f"Invalid config file {path}: {e}") from e

        config.validate()
        return config

    def to_yaml(self, path: str | Path) -> None:
        """
        Save configuration to a YAML file, creating parent directories.
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w", encoding="utf-8") as f:
            yaml.dump(
                asdict(self),
                f,
                default_flow_style=False,
                sort_keys=False,
                allow_unicode=True,
            )

        logger.info(f"Config saved to {path}")

    def to_dict(self) -> dict:
        """Convert to nested dictionary."""
        return asdict(self)

    @classmethod
    def for_smoke_test(cls) -> LoRAForgeConfig:
        """
        Create a minimal configuration for quick smoke testing.

        Tiny rank, no dropout, a couple of epochs: a full run against the
        reference base model finishes in seconds on a CPU.
        """
        return cls(
            adapter=AdapterConfig(
                rank=4,
                alpha=8.0,
                dropout=0.0,
                target_modules=["q_proj", "v_proj"],
                max_sequence_length=64,
            ),
            training=TrainingConfig(
                epochs=2,
                batch_size=2,
                learning_rate=1e-3,
                weight_decay=0.0,
                warmup_steps=0,
                save_steps=1000,
                output_dir="lora_output_smoke",
                seed=42,
                log_every=10,
            ),
        )

    def __repr__(self) -> str:
        lines = [
            "LoRAForgeConfig(",
            f"  Adapter:  rank={self.adapter.rank}, alpha={self.adapter.alpha}, "
            f"dropout={self.adapter.dropout}, "
            f"targets={self.adapter.target_modules}",
            f"  Training: epochs={self.training.epochs}, "
            f"batch_size={self.training.batch_size}, "
            f"lr={self.training.learning_rate}, "
            f"save_steps={self.training.save_steps}",
            f"  Output:   {self.training.output_dir}",
            ")",
        ]
        return "\n".join(lines)
