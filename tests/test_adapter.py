"""
LoRAForge Test Suite — Adapters
================================
AdapterModule math (forward, manual backward, Adam) and AdapterSet
construction, naming and logit routing.

Run with:
    python -m pytest tests/test_adapter.py -v
"""

import math
import sys
from pathlib import Path

import pytest
import torch

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def _module(input_dim=6, output_dim=5, rank=3, seed=0):
    from loraforge.adapter.module import AdapterModule
    generator = torch.Generator().manual_seed(seed)
    return AdapterModule("blk.0.attn_q.weight", input_dim, output_dim, rank, generator=generator)


# =============================================================================
# AdapterModule
# =============================================================================

class TestAdapterModule:
    """Single (A, B) pair."""

    @pytest.mark.parametrize("rank, input_dim, output_dim", [(1, 1, 1), (4, 16, 8), (8, 3, 12)])
    def test_shapes(self, rank, input_dim, output_dim):
        module = _module(input_dim, output_dim, rank)
        assert module.lora_a.shape == (rank, input_dim)
        assert module.lora_b.shape == (output_dim, rank)
        assert module.grad_a.shape == module.lora_a.shape
        assert module.grad_b.shape == module.lora_b.shape
        assert module.n_params == rank * (input_dim + output_dim)

    def test_starts_as_noop(self):
        """B is zero, so the delta is exactly zero for any input."""
        module = _module()
        assert torch.count_nonzero(module.lora_b) == 0
        x = torch.randn(6) * 100
        assert torch.equal(module.forward(x, alpha=32.0), torch.zeros(5))

    def test_a_init_scale(self):
        module = _module(input_dim=512, output_dim=4, rank=4)
        std = module.lora_a.std().item()
        assert abs(std - math.sqrt(1 / 4)) < 0.05

    def test_same_seed_same_init(self):
        assert torch.equal(_module(seed=3).lora_a, _module(seed=3).lora_a)
        assert not torch.equal(_module(seed=3).lora_a, _module(seed=4).lora_a)

    def test_forward_value(self):
        module = _module()
        module.lora_b = torch.randn(5, 3)
        x = torch.randn(6)
        expected = 2.5 * (module.lora_b @ (module.lora_a @ x))
        assert torch.allclose(module.forward(x, alpha=2.5), expected)

    def test_forward_does_not_mutate_input(self):
        module = _module()
        module.lora_b = torch.randn(5, 3)
        x = torch.randn(6)
        before = x.clone()
        module.forward(x, alpha=1.0, training=True, dropout_rate=0.5)
        assert torch.equal(x, before)

    def test_backward_matches_autograd(self):
        module = _module()
        module.lora_b = torch.randn(5, 3)
        x = torch.randn(6)
        g = torch.randn(5)
        alpha = 1.7

        a = module.lora_a.clone().requires_grad_(True)
        b = module.lora_b.clone().requires_grad_(True)
        (alpha * (b @ (a @ x)) * g).sum().backward()

        module.backward(x, g, alpha)
        assert torch.allclose(module.grad_a, a.grad, atol=1e-5)
        assert torch.allclose(module.grad_b, b.grad, atol=1e-5)

    def test_backward_accumulates(self):
        module = _module()
        module.lora_b = torch.randn(5, 3)
        x, g = torch.randn(6), torch.randn(5)
        module.backward(x, g, 1.0)
        once_a, once_b = module.grad_a.clone(), module.grad_b.clone()
        module.backward(x, g, 1.0)
        assert torch.allclose(module.grad_a, 2 * once_a)
        assert torch.allclose(module.grad_b, 2 * once_b)

    def test_zero_b_gives_zero_grad_a(self):
        """While B is zero only B receives a gradient."""
        module = _module()
        module.backward(torch.randn(6), torch.randn(5), 4.0)
        assert torch.count_nonzero(module.grad_a) == 0
        assert torch.count_nonzero(module.grad_b) > 0

    def test_update_resets_gradients(self):
        module = _module()
        module.lora_b = torch.randn(5, 3)
        module.backward(torch.randn(6), torch.randn(5), 1.0)
        module.update(1e-3, 0.9, 0.999, 1e-8, step=1)
        assert torch.count_nonzero(module.grad_a) == 0
        assert torch.count_nonzero(module.grad_b) == 0

    def test_first_adam_step_moves_by_learning_rate(self):
        """With bias correction, step 1 moves every parameter by ~lr against its gradient sign."""
        module = _module()
        module.grad_b = torch.tensor([[1.0, -2.0, 0.5]] * 5)
        before = module.lora_b.clone()
        lr = 1e-3
        module.update(lr, 0.9, 0.999, 1e-8, step=1)
        expected = before - lr * torch.sign(torch.tensor([[1.0, -2.0, 0.5]] * 5))
        assert torch.allclose(module.lora_b, expected, atol=1e-6)

    def test_zero_gradient_update_is_noop(self):
        module = _module()
        before_a = module.lora_a.clone()
        module.update(1e-2, 0.9, 0.999, 1e-8, step=1)
        assert torch.equal(module.lora_a, before_a)
        assert torch.count_nonzero(module.lora_b) == 0

    def test_step_must_start_at_one(self):
        with pytest.raises(ValueError):
            _module().update(1e-3, 0.9, 0.999, 1e-8, step=0)

    def test_input_shape_checked(self):
        module = _module()
        with pytest.raises(ValueError):
            module.forward(torch.randn(7), alpha=1.0)
        with pytest.raises(ValueError):
            module.backward(torch.randn(6), torch.randn(4), 1.0)

    def test_dropout_scales_survivors(self):
        module = _module()
        x = torch.ones(10_000)
        generator = torch.Generator().manual_seed(0)
        out = module.apply_dropout(x, 0.5, generator)
        values = set(out.unique().tolist())
        assert values <= {0.0, 2.0}
        assert abs(out.mean().item() - 1.0) < 0.05

    def test_dropout_zero_rate_is_identity(self):
        module = _module()
        x = torch.randn(6)
        assert torch.equal(module.apply_dropout(x, 0.0), x)

    def test_from_tensors(self):
        from loraforge.adapter.module import AdapterModule
        a, b = torch.randn(2, 4), torch.randn(3, 2)
        module = AdapterModule.from_tensors("m", a, b)
        assert (module.rank, module.input_dim, module.output_dim) == (2, 4, 3)
        assert torch.equal(module.lora_a, a)
        assert torch.equal(module.lora_b, b)

    def test_from_tensors_rank_mismatch(self):
        from loraforge.adapter.module import AdapterModule
        with pytest.raises(ValueError):
            AdapterModule.from_tensors("m", torch.randn(2, 4), torch.randn(3, 5))


# =============================================================================
# AdapterSet
# =============================================================================

class TestAdapterSet:
    """Construction, naming and logit routing."""

    def test_names_and_order(self):
        from loraforge.adapter.adapter_set import AdapterSet
        adapters = AdapterSet.build(2, 8, ["q_proj", "v_proj"], rank=2, seed=0)
        assert adapters.names() == [
            "blk.0.attn_q.weight",
            "blk.1.attn_q.weight",
            "blk.0.attn_v.weight",
            "blk.1.attn_v.weight",
        ]
        assert len(adapters) == 4
        assert adapters["blk.1.attn_v.weight"].layer == 1
        assert adapters["blk.1.attn_v.weight"].projection == "v_proj"

    def test_all_projection_names(self):
        from loraforge.adapter.adapter_set import PROJECTION_TENSOR_NAMES, tensor_name
        assert tensor_name(3, "o_proj") == "blk.3.attn_output.weight"
        assert tensor_name(0, "gate_proj") == "blk.0.ffn_gate.weight"
        assert tensor_name(0, "up_proj") == "blk.0.ffn_up.weight"
        assert tensor_name(5, "down_proj") == "blk.5.ffn_down.weight"
        assert tensor_name(1, "custom") == "blk.1.custom.weight"
        assert len(PROJECTION_TENSOR_NAMES) == 7

    def test_build_is_deterministic(self):
        from loraforge.adapter.adapter_set import AdapterSet
        first = AdapterSet.build(2, 8, ["q_proj"], rank=2, seed=11)
        second = AdapterSet.build(2, 8, ["q_proj"], rank=2, seed=11)
        for name in first:
            assert torch.equal(first[name].lora_a, second[name].lora_a)

    def test_param_count(self):
        from loraforge.adapter.adapter_set import AdapterSet
        adapters = AdapterSet.build(3, 8, ["q_proj", "k_proj"], rank=2, seed=0)
        assert adapters.n_params == 6 * 2 * (8 + 8)

    @pytest.mark.parametrize("kwargs", [
        dict(layer_count=0, model_dim=8, target_modules=["q_proj"], rank=2),
        dict(layer_count=1, model_dim=0, target_modules=["q_proj"], rank=2),
        dict(layer_count=1, model_dim=8, target_modules=[], rank=2),
        dict(layer_count=1, model_dim=8, target_modules=["q_proj"], rank=0),
    ])
    def test_invalid_build(self, kwargs):
        from loraforge.adapter.adapter_set import AdapterSet
        from loraforge.errors import ConfigurationError
        with pytest.raises(ConfigurationError):
            AdapterSet.build(**kwargs)

    def test_dimension_mismatch(self):
        from loraforge.adapter.adapter_set import AdapterSet
        from loraforge.errors import ConfigurationError

        dims = {"q_proj": (8, 8), "down_proj": (32, 8)}
        with pytest.raises(ConfigurationError) as info:
            AdapterSet.build(2, 8, ["q_proj", "down_proj"], rank=2, projection_dims=dims)
        assert info.value.module == "blk.0.ffn_down.weight"
        assert info.value.expected == (8, 8)
        assert info.value.actual == (32, 8)

    def test_unknown_projection(self):
        from loraforge.adapter.adapter_set import AdapterSet
        from loraforge.errors import ConfigurationError
        with pytest.raises(ConfigurationError):
            AdapterSet.build(1, 8, ["w_proj"], rank=2, projection_dims={"q_proj": (8, 8)})

    def test_duplicate_module(self):
        from loraforge.adapter.adapter_set import AdapterSet
        from loraforge.errors import ConfigurationError
        with pytest.raises(ConfigurationError):
            AdapterSet([_module(), _module()])

    def test_apply_to_logits_starts_as_noop(self):
        from loraforge.adapter.adapter_set import AdapterSet
        adapters = AdapterSet.build(2, 8, ["q_proj"], rank=2, seed=0)
        base = torch.randn(20)
        activations = {name: torch.randn(8) for name in adapters}
        out = adapters.apply_to_logits(base, activations, alpha=16.0)
        assert torch.equal(out, base)
        assert out is not base

    def test_apply_to_logits_overlap(self):
        """Deltas touch only min(output_dim, vocab) leading entries."""
        from loraforge.adapter.adapter_set import AdapterSet
        adapters = AdapterSet.build(1, 8, ["q_proj"], rank=2, seed=0)
        module = adapters["blk.0.attn_q.weight"]
        module.lora_b = torch.randn(8, 2)
        x = torch.randn(8)

        wide = adapters.apply_to_logits(torch.zeros(20), {module.name: x}, alpha=1.0)
        assert torch.count_nonzero(wide[8:]) == 0
        assert torch.allclose(wide[:8], module.forward(x, 1.0))

        narrow = adapters.apply_to_logits(torch.zeros(5), {module.name: x}, alpha=1.0)
        assert narrow.shape == (5,)
        assert torch.allclose(narrow, module.forward(x, 1.0)[:5])

    def test_backward_pads_short_vocab(self):
        from loraforge.adapter.adapter_set import AdapterSet
        adapters = AdapterSet.build(1, 8, ["q_proj"], rank=2, seed=0)
        module = adapters["blk.0.attn_q.weight"]
        x = torch.randn(8)
        adapters.backward(torch.ones(5), {module.name: x}, alpha=1.0)
        assert torch.count_nonzero(module.grad_b[5:]) == 0
        assert torch.count_nonzero(module.grad_b[:5]) > 0

    def test_trace_records_dropped_inputs(self):
        from loraforge.adapter.adapter_set import AdapterSet
        adapters = AdapterSet.build(1, 8, ["q_proj"], rank=2, seed=0)
        activations = {name: torch.ones(8) for name in adapters}
        trace = {}
        adapters.apply_to_logits(
            torch.zeros(8), activations, alpha=1.0, training=True,
            dropout_rate=0.5, generator=torch.Generator().manual_seed(1), trace=trace,
        )
        recorded = trace["blk.0.attn_q.weight"]
        assert set(recorded.unique().tolist()) <= {0.0, 2.0}
        assert torch.equal(activations["blk.0.attn_q.weight"], torch.ones(8))

    def test_snapshot_is_a_copy(self):
        from loraforge.adapter.adapter_set import AdapterSet
        adapters = AdapterSet.build(1, 8, ["q_proj"], rank=2, seed=0)
        (name, a, b), = adapters.snapshot()
        adapters[name].lora_a.add_(1.0)
        assert not torch.equal(a, adapters[name].lora_a)


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
