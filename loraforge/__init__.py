"""
LoRAForge
=========
A low-rank adapter (LoRA) training engine for frozen language models.

This package provides:
    1. Low-rank (A, B) adapter modules with hand-written forward, backward
       and Adam update math
    2. A training loop scoring the masked target span of each sample
    3. The GGUF "adapter" container an inference engine loads, written and
       read bit-exactly
    4. Dataset loaders, prompt formats, and PEFT ↔ GGUF conversion

The base model is never modified. It is consumed through two calls,
``encode(text)`` and ``logits_at(tokens, position)``, plus optional
per-layer activations.

Quick Start:
    >>> from loraforge.config import LoRAForgeConfig
    >>> from loraforge.training.trainer import LoRATrainer
    >>> config = LoRAForgeConfig.from_yaml("configs/default.yaml")
    >>> trainer = LoRATrainer(base_model, config, layer_count=32, model_dim=4096)
    >>> trainer.train(samples)

Subpackages:
    - loraforge.adapter   — AdapterModule, AdapterSet, AdapterSerializer
    - loraforge.gguf      — GGUF container reader and writer
    - loraforge.data      — TrainingSample, formats, loaders, tokenizer
    - loraforge.model     — Base-model contract and reference model
    - loraforge.training  — Training loop and loss metrics
"""

__version__ = "0.1.0"
__author__ = "Aditya"
