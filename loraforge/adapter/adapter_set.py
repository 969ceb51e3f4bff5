"""
LoRAForge Adapter Set
=====================
An ordered collection of AdapterModules, one per (layer, target projection),
keyed by the fully-qualified tensor name of the projection it adapts.

Naming:
    HuggingFace projection names are mapped to GGUF tensor names, and every
    module is named after the base tensor it patches:

        q_proj  (layer 3)  →  blk.3.attn_q.weight
        down_proj (layer 0) → blk.0.ffn_down.weight

    Names are a pure function of (layer_count, target_modules), so the same
    configuration always produces the same names in the same order. Both
    the adapter container layout and adapter reload matching depend on it.

Order:
    Projection-major, then layer ascending, exactly as constructed. The
    serializer walks modules in this order.

Usage:
    >>> adapters = AdapterSet.build(
    ...     layer_count=32, model_dim=4096,
    ...     target_modules=["q_proj", "v_proj"], rank=16, seed=42,
    ... )
    >>> len(adapters)
    64
    >>> logits = adapters.apply_to_logits(base_logits, activations, alpha=32.0)
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from typing import Optional, Sequence

import torch

from loraforge.adapter.module import AdapterModule
from loraforge.errors import ConfigurationError

logger = logging.getLogger(__name__)

# HuggingFace projection name → GGUF tensor stem
PROJECTION_TENSOR_NAMES = {
    "q_proj": "attn_q",
    "k_proj": "attn_k",
    "v_proj": "attn_v",
    "o_proj": "attn_output",
    "gate_proj": "ffn_gate",
    "up_proj": "ffn_up",
    "down_proj": "ffn_down",
}


def tensor_name(layer: int, projection: str) -> str:
    """GGUF tensor name of ``projection`` in ``layer``."""
    stem = PROJECTION_TENSOR_NAMES.get(projection, projection)
    return f"blk.{layer}.{stem}.weight"


class AdapterSet(Mapping):
    """
    Insertion-ordered mapping ``tensor name → AdapterModule``.

    Use :meth:`build` to create the modules for a base model; the plain
    constructor creates an empty set (used when loading a container).
    """

    def __init__(self, modules: Optional[Sequence[AdapterModule]] = None):
        self._modules: dict[str, AdapterModule] = {}
        for module in modules or ():
            self.add(module)

    # ─── Construction ───────────────────────────────────────────────────

    @classmethod
    def build(
        cls,
        layer_count: int,
        model_dim: int,
        target_modules: Sequence[str],
        rank: int,
        seed: Optional[int] = None,
        projection_dims: Optional[Mapping[str, tuple[int, int]]] = None,
    ) -> AdapterSet:
        """
        Create one square (model_dim x model_dim) adapter per target
        projection per layer.

        Parameters
        ----------
        layer_count : int
            Number of transformer layers in the base model.
        model_dim : int
            Hidden size of the base model.
        target_modules : sequence of str
            Projection names to adapt.
        rank : int
            LoRA rank.
        seed : int or None
            Seed for the Gaussian initialization of every A matrix.
        projection_dims : mapping or None
            ``projection → (input_dim, output_dim)`` as reported by the base
            model. When given, every target is checked against it before any
            module is created.

        Raises
        ------
        ConfigurationError
            On non-positive sizes, an empty target list, or a projection whose
            real dimensions differ from ``model_dim``.
        """
        if layer_count <= 0:
            raise ConfigurationError(
                f"layer_count must be positive, got {layer_count}"
            )
        if model_dim <= 0:
            raise ConfigurationError(
                f"model_dim must be positive, got {model_dim}"
            )
        if rank <= 0:
            raise ConfigurationError(f"rank must be positive, got {rank}")
        if not target_modules:
            raise ConfigurationError("target_modules must not be empty")

        if projection_dims is not None:
            cls._check_projection_dims(
                layer_count, model_dim, target_modules, projection_dims
            )

        generator = torch.Generator()
        if seed is not None:
            generator.manual_seed(seed)
        else:
            generator.seed()

        adapters = cls()
        for projection in target_modules:
            for layer in range(layer_count):
                adapters.add(AdapterModule(
                    tensor_name(layer, projection),
                    input_dim=model_dim,
                    output_dim=model_dim,
                    rank=rank,
                    generator=generator,
                    layer=layer,
                    projection=projection,
                ))

        logger.info(
            f"Created {len(adapters)} LoRA modules with rank {rank} across "
            f"{layer_count} layers (model_dim={model_dim}, "
            f"{adapters.n_params / 1e6:.2f}M trainable parameters)"
        )
        return adapters

    @staticmethod
    def _check_projection_dims(
        layer_count: int,
        model_dim: int,
        target_modules: Sequence[str],
        projection_dims: Mapping[str, tuple[int, int]],
    ) -> None:
        for projection in target_modules:
            name = tensor_name(0, projection)
            if projection not in projection_dims:
                raise ConfigurationError(
                    f"Base model has no projection '{projection}' "
                    f"(needed by {name}); known projections: "
                    f"{sorted(projection_dims)}",
                    module=name,
                )
            actual = tuple(projection_dims[projection])
            expected = (model_dim, model_dim)
            if actual != expected:
                raise ConfigurationError(
                    f"Dimension mismatch for {name} (and the other "
                    f"{layer_count - 1} layers): adapter expects "
                    f"(input_dim, output_dim)={expected}, base model "
                    f"projection is {actual}",
                    module=name,
                    expected=expected,
                    actual=actual,
                )

    def add(self, module: AdapterModule) -> None:
        """Append a module; names must be unique."""
        if module.name in self._modules:
            raise ConfigurationError(
                f"Duplicate adapter module name: {module.name}",
                module=module.name,
            )
        self._modules[module.name] = module

    # ─── Mapping protocol ───────────────────────────────────────────────

    def __getitem__(self, name: str) -> AdapterModule:
        return self._modules[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._modules)

    def __len__(self) -> int:
        return len(self._modules)

    def names(self) -> list[str]:
        """Module names in serialization order."""
        return list(self._modules)

    def modules(self) -> list[AdapterModule]:
        """Modules in serialization order."""
        return list(self._modules.values())

    # ─── Forward / backward over all modules ────────────────────────────

    def apply_to_logits(
        self,
        base_logits: torch.Tensor,
        activations: Mapping[str, torch.Tensor],
        alpha: float,
        training: bool = False,
        dropout_rate: float = 0.0,
        generator: Optional[torch.Generator] = None,
        trace: Optional[dict[str, torch.Tensor]] = None,
    ) -> torch.Tensor:
        """
        Add every module's delta into a copy of ``base_logits``.

        Deltas are added over the overlapping index range only
        (``min(output_dim, vocab_size)`` entries). This maps projection
        outputs onto the vocabulary positionally, a simplification that
        holds until the base model exposes its own delta routing.

        Parameters
        ----------
        base_logits : torch.Tensor
            Base model logits, shape (vocab_size,). Never modified.
        activations : mapping
            ``module name → input activation`` for every module.
        alpha : float
            LoRA scaling factor.
        training : bool
            Enables dropout.
        dropout_rate : float
            Inverted-dropout probability.
        generator : torch.Generator or None
            Random source for dropout masks.
        trace : dict or None
            When given, receives ``module name → effective input`` (after
            dropout) for the matching :meth:`backward` call.

        Returns
        -------
        torch.Tensor
            Adjusted logits, a new tensor.
        """
        logits = torch.as_tensor(base_logits, dtype=torch.float32).clone()
        vocab_size = logits.shape[0]

        for name, module in self._modules.items():
            x = torch.as_tensor(activations[name], dtype=torch.float32)
            if training and dropout_rate > 0.0:
                x = module.apply_dropout(x, dropout_rate, generator)
            if trace is not None:
                trace[name] = x

            delta = module.forward(x, alpha)
            overlap = min(delta.shape[0], vocab_size)
            logits[:overlap] += delta[:overlap]

        return logits

    def backward(
        self,
        logits_grad: torch.Tensor,
        activations: Mapping[str, torch.Tensor],
        alpha: float,
    ) -> None:
        """
        Push ``dLoss/dlogits`` into every module.

        Each module receives the slice of the logits gradient covering its
        output range, zero-padded when the vocabulary is shorter than the
        module output.
        """
        logits_grad = torch.as_tensor(logits_grad, dtype=torch.float32)
        vocab_size = logits_grad.shape[0]

        for name, module in self._modules.items():
            if module.output_dim <= vocab_size:
                module_grad = logits_grad[:module.output_dim]
            else:
                module_grad = torch.zeros(module.output_dim, dtype=torch.float32)
                module_grad[:vocab_size] = logits_grad
            module.backward(activations[name], module_grad, alpha)

    def update(
        self,
        learning_rate: float,
        beta1: float,
        beta2: float,
        epsilon: float,
        step: int,
    ) -> None:
        """One Adam step on every module (gradients are zeroed afterwards)."""
        for module in self._modules.values():
            module.update(learning_rate, beta1, beta2, epsilon, step)

    def zero_grad(self) -> None:
        for module in self._modules.values():
            module.zero_grad()

    # ─── Snapshots ──────────────────────────────────────────────────────

    def snapshot(self) -> list[tuple[str, torch.Tensor, torch.Tensor]]:
        """
        Ordered ``(name, A, B)`` copies of every module.

        Taken before a checkpoint write so the writer never sees weights
        that change under it.
        """
        return [(name, *module.state()) for name, module in self._modules.items()]

    @property
    def n_params(self) -> int:
        """Total trainable parameters across all modules."""
        return sum(m.n_params for m in self._modules.values())

    def __repr__(self) -> str:
        return (
            f"AdapterSet(modules={len(self)}, "
            f"params={self.n_params:,})"
        )
