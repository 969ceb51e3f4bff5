"""
LoRAForge Adapter Module
=========================
One low-rank matrix pair (A, B) attached to one projection of one layer of
the frozen base model. This is the unit that actually learns.

The Math:
    W' = W + alpha * (B @ A)          rank(B @ A) <= r << min(in, out)

    forward:   delta = alpha * B @ (A @ x)
    backward:  grad_B += alpha * outer(g, A @ x)
               grad_A += alpha * outer(B^T @ g, x)
    update:    one Adam step per element, then grad_A = grad_B = 0

Shapes:
    A : (r, in)     Gaussian init, std = sqrt(1 / r)
    B : (out, r)    zero init  →  the adapter starts as an exact no-op

Analogy:
    The base weight W is a huge, fixed mixing desk. The adapter is a tiny
    two-knob box patched in parallel: A compresses the input down to r
    channels, B spreads those r channels back out. Because B starts at
    zero, the box is silent until training turns its knobs.

Everything here is plain tensor arithmetic. No autograd graph is built;
gradients are computed explicitly and accumulated by hand.

Usage:
    >>> module = AdapterModule("blk.0.attn_q.weight", 4096, 4096, rank=16)
    >>> delta = module.forward(x, alpha=32.0)
    >>> module.backward(x, grad_out, alpha=32.0)
    >>> module.update(2e-4, 0.9, 0.999, 1e-8, step=1)
"""

from __future__ import annotations

import logging
import math
from typing import Optional

import torch

logger = logging.getLogger(__name__)


class AdapterModule:
    """
    A single LoRA (A, B) pair with its gradient accumulators and Adam state.

    Parameters
    ----------
    name : str
        Fully-qualified tensor name of the adapted projection,
        e.g. ``blk.3.attn_v.weight``. Serialized tensors are named
        ``<name>.lora_a`` and ``<name>.lora_b``.

    input_dim : int
        Input dimension of the adapted projection (columns of A).

    output_dim : int
        Output dimension of the adapted projection (rows of B).

    rank : int
        Inner dimension r.

    generator : torch.Generator or None
        Random source for the Gaussian initialization of A. Pass a seeded
        generator for reproducible adapters.

    layer : int or None
        Layer index this module belongs to (used to fetch activations).

    projection : str or None
        Projection name this module adapts (used to fetch activations).
    """

    def __init__(
        self,
        name: str,
        input_dim: int,
        output_dim: int,
        rank: int,
        generator: Optional[torch.Generator] = None,
        layer: Optional[int] = None,
        projection: Optional[str] = None,
    ):
        if input_dim <= 0 or output_dim <= 0:
            raise ValueError(
                f"{name}: dimensions must be positive, got "
                f"input_dim={input_dim}, output_dim={output_dim}"
            )
        if rank <= 0:
            raise ValueError(f"{name}: rank must be positive, got {rank}")

        self.name = name
        self.input_dim = input_dim
        self.output_dim = output_dim
        self.rank = rank
        self.layer = layer
        self.projection = projection

        # A ~ N(0, 1/r), B = 0
        std = math.sqrt(1.0 / rank)
        self.lora_a = torch.randn(
            rank, input_dim, generator=generator, dtype=torch.float32
        ) * std
        self.lora_b = torch.zeros(output_dim, rank, dtype=torch.float32)

        self.grad_a = torch.zeros_like(self.lora_a)
        self.grad_b = torch.zeros_like(self.lora_b)

        # Adam moments
        self.m_a = torch.zeros_like(self.lora_a)
        self.v_a = torch.zeros_like(self.lora_a)
        self.m_b = torch.zeros_like(self.lora_b)
        self.v_b = torch.zeros_like(self.lora_b)

    @classmethod
    def from_tensors(
        cls,
        name: str,
        lora_a: torch.Tensor,
        lora_b: torch.Tensor,
        layer: Optional[int] = None,
        projection: Optional[str] = None,
    ) -> AdapterModule:
        """
        Rebuild a module from stored A and B matrices.

        Optimizer state starts fresh; gradients start at zero.

        Raises
        ------
        ValueError
            If the matrices are not 2-D or their ranks disagree.
        """
        if lora_a.dim() != 2 or lora_b.dim() != 2:
            raise ValueError(
                f"{name}: lora_a and lora_b must be 2-D, got shapes "
                f"{tuple(lora_a.shape)} and {tuple(lora_b.shape)}"
            )
        rank, input_dim = lora_a.shape
        output_dim, rank_b = lora_b.shape
        if rank != rank_b:
            raise ValueError(
                f"{name}: rank mismatch between lora_a {tuple(lora_a.shape)} "
                f"and lora_b {tuple(lora_b.shape)}"
            )

        module = cls(
            name, input_dim, output_dim, rank,
            layer=layer, projection=projection,
        )
        module.lora_a = lora_a.detach().to(torch.float32).clone()
        module.lora_b = lora_b.detach().to(torch.float32).clone()
        return module

    # ─── Forward ────────────────────────────────────────────────────────

    def apply_dropout(
        self,
        x: torch.Tensor,
        dropout_rate: float,
        generator: Optional[torch.Generator] = None,
    ) -> torch.Tensor:
        """
        Inverted dropout: zero each element with probability ``dropout_rate``
        and scale the survivors by ``1 / (1 - dropout_rate)``.

        Returns a new tensor; ``x`` is not modified.
        """
        if dropout_rate <= 0.0:
            return x
        if dropout_rate >= 1.0:
            raise ValueError(f"dropout_rate must be < 1, got {dropout_rate}")

        keep = torch.rand(x.shape, generator=generator) >= dropout_rate
        return torch.where(keep, x / (1.0 - dropout_rate), torch.zeros_like(x))

    def forward(
        self,
        x: torch.Tensor,
        alpha: float,
        training: bool = False,
        dropout_rate: float = 0.0,
        generator: Optional[torch.Generator] = None,
    ) -> torch.Tensor:
        """
        Compute the adapter's output delta ``alpha * B @ (A @ x)``.

        Parameters
        ----------
        x : torch.Tensor
            Input activation, shape (input_dim,).
        alpha : float
            LoRA scaling factor.
        training : bool
            Apply dropout to ``x`` when True and ``dropout_rate > 0``.
        dropout_rate : float
            Inverted-dropout probability.
        generator : torch.Generator or None
            Random source for the dropout mask.

        Returns
        -------
        torch.Tensor
            Delta of shape (output_dim,).
        """
        x = self._check_input(x)
        if training and dropout_rate > 0.0:
            x = self.apply_dropout(x, dropout_rate, generator)

        return alpha * (self.lora_b @ (self.lora_a @ x))

    # ─── Backward ───────────────────────────────────────────────────────

    def backward(
        self,
        input_activation: torch.Tensor,
        output_grad: torch.Tensor,
        alpha: float,
    ) -> None:
        """
        Accumulate gradients for A and B.

        ``input_activation`` must be the exact input used by the matching
        forward call (after dropout), ``output_grad`` the gradient of the
        loss with respect to that call's output. Gradients are summed until
        the next ``update()``.
        """
        x = self._check_input(input_activation)
        g = torch.as_tensor(output_grad, dtype=torch.float32)
        if g.shape != (self.output_dim,):
            raise ValueError(
                f"{self.name}: expected output gradient of shape "
                f"({self.output_dim},), got {tuple(g.shape)}"
            )

        a_out = self.lora_a @ x          # (r,)
        b_t_grad = self.lora_b.t() @ g   # (r,)

        self.grad_b += alpha * torch.outer(g, a_out)
        self.grad_a += alpha * torch.outer(b_t_grad, x)

    # ─── Optimizer ──────────────────────────────────────────────────────

    def update(
        self,
        learning_rate: float,
        beta1: float,
        beta2: float,
        epsilon: float,
        step: int,
    ) -> None:
        """
        Apply one Adam step using the accumulated gradients, then zero them.

        The bias correction is folded into the step size:
            lr_t = lr * sqrt(1 - beta2^t) / (1 - beta1^t)

        Parameters
        ----------
        step : int
            1-based optimizer step. Must increase by exactly one per call.
        """
        if step < 1:
            raise ValueError(f"Adam step must start at 1, got {step}")

        corrected_lr = (
            learning_rate
            * math.sqrt(1.0 - beta2 ** step)
            / (1.0 - beta1 ** step)
        )

        for param, grad, m, v in (
            (self.lora_a, self.grad_a, self.m_a, self.v_a),
            (self.lora_b, self.grad_b, self.m_b, self.v_b),
        ):
            m.mul_(beta1).add_(grad, alpha=1.0 - beta1)
            v.mul_(beta2).addcmul_(grad, grad, value=1.0 - beta2)
            param.sub_(corrected_lr * m / (v.sqrt() + epsilon))

        self.zero_grad()

    def zero_grad(self) -> None:
        """Reset both gradient accumulators to exactly zero."""
        self.grad_a.zero_()
        self.grad_b.zero_()

    # ─── Introspection ──────────────────────────────────────────────────

    @property
    def n_params(self) -> int:
        """Trainable parameter count: r * (in + out)."""
        return self.rank * (self.input_dim + self.output_dim)

    def state(self) -> tuple[torch.Tensor, torch.Tensor]:
        """Detached copies of (A, B), safe to hand to a writer."""
        return self.lora_a.clone(), self.lora_b.clone()

    def _check_input(self, x: torch.Tensor) -> torch.Tensor:
        x = torch.as_tensor(x, dtype=torch.float32)
        if x.shape != (self.input_dim,):
            raise ValueError(
                f"{self.name}: expected input of shape ({self.input_dim},), "
                f"got {tuple(x.shape)}"
            )
        return x

    def __repr__(self) -> str:
        return (
            f"AdapterModule(name={self.name}, in={self.input_dim}, "
            f"out={self.output_dim}, rank={self.rank})"
        )
