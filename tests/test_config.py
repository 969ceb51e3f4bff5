"""
LoRAForge Test Suite — Configuration
=====================================
Defaults, validation rules and YAML round trips.

Run with:
    python -m pytest tests/test_config.py -v
"""

import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


# =============================================================================
# Defaults
# =============================================================================

class TestDefaults:
    """Default and smoke-test configurations."""

    def test_default_config_validates(self):
        from loraforge.config import LoRAForgeConfig
        config = LoRAForgeConfig()
        config.validate()

    def test_default_values(self):
        from loraforge.config import LoRAForgeConfig
        config = LoRAForgeConfig()
        assert config.adapter.rank == 16
        assert config.adapter.alpha == 32.0
        assert config.adapter.dropout == 0.1
        assert config.adapter.target_modules == ["q_proj", "k_proj", "v_proj", "o_proj"]
        assert config.adapter.max_sequence_length == 2048
        assert config.training.epochs == 3
        assert config.training.batch_size == 4
        assert config.training.learning_rate == 2e-4
        assert config.training.save_steps == 500
        assert config.training.beta1 == 0.9
        assert config.training.beta2 == 0.999
        assert config.training.epsilon == 1e-8

    def test_target_modules_not_shared(self):
        """Each config gets its own target list."""
        from loraforge.config import AdapterConfig
        a = AdapterConfig()
        b = AdapterConfig()
        a.target_modules.append("up_proj")
        assert "up_proj" not in b.target_modules

    def test_smoke_config(self):
        from loraforge.config import LoRAForgeConfig
        config = LoRAForgeConfig.for_smoke_test()
        config.validate()
        assert config.adapter.rank == 4
        assert config.adapter.dropout == 0.0
        assert config.training.epochs == 2

    def test_repr_mentions_rank(self):
        from loraforge.config import LoRAForgeConfig
        assert "rank=16" in repr(LoRAForgeConfig())


# =============================================================================
# Validation
# =============================================================================

class TestValidation:
    """Out-of-range values raise ConfigurationError."""

    @pytest.mark.parametrize("field, value", [
        ("rank", 0),
        ("rank", -4),
        ("alpha", 0.0),
        ("alpha", float("inf")),
        ("alpha", 1e39),
        ("dropout", 1.0),
        ("dropout", -0.1),
        ("target_modules", []),
        ("target_modules", ["q_proj", "q_proj"]),
        ("max_sequence_length", 0),
    ])
    def test_invalid_adapter_values(self, field, value):
        from loraforge.config import LoRAForgeConfig
        from loraforge.errors import ConfigurationError

        config = LoRAForgeConfig()
        setattr(config.adapter, field, value)
        with pytest.raises(ConfigurationError):
            config.validate()

    @pytest.mark.parametrize("field, value", [
        ("epochs", 0),
        ("batch_size", 0),
        ("learning_rate", 0.0),
        ("weight_decay", -0.01),
        ("warmup_steps", -1),
        ("save_steps", 0),
        ("output_dir", ""),
        ("beta1", 1.0),
        ("beta2", -0.5),
        ("epsilon", 0.0),
    ])
    def test_invalid_training_values(self, field, value):
        from loraforge.config import LoRAForgeConfig
        from loraforge.errors import ConfigurationError

        config = LoRAForgeConfig()
        setattr(config.training, field, value)
        with pytest.raises(ConfigurationError):
            config.validate()

    def test_configuration_error_is_value_error(self):
        from loraforge.config import AdapterConfig
        with pytest.raises(ValueError):
            AdapterConfig(rank=0).validate()

    def test_inert_fields_accepted(self):
        """weight_decay and warmup_steps validate but do nothing else."""
        from loraforge.config import LoRAForgeConfig
        config = LoRAForgeConfig()
        config.training.weight_decay = 0.5
        config.training.warmup_steps = 10_000
        config.validate()


# =============================================================================
# YAML
# =============================================================================

class TestYaml:
    """Load and save."""

    def test_round_trip(self, tmp_path):
        from loraforge.config import LoRAForgeConfig

        config = LoRAForgeConfig.for_smoke_test()
        config.adapter.target_modules = ["q_proj", "down_proj"]
        config.training.seed = 7
        path = tmp_path / "nested" / "run.yaml"
        config.to_yaml(path)

        loaded = LoRAForgeConfig.from_yaml(path)
        assert loaded.to_dict() == config.to_dict()

    def test_partial_file_uses_defaults(self, tmp_path):
        from loraforge.config import LoRAForgeConfig

        path = tmp_path / "partial.yaml"
        path.write_text("adapter:\n  rank: 8\n", encoding="utf-8")
        config = LoRAForgeConfig.from_yaml(path)
        assert config.adapter.rank == 8
        assert config.adapter.alpha == 32.0
        assert config.training.epochs == 3

    def test_missing_file(self, tmp_path):
        from loraforge.config import LoRAForgeConfig
        with pytest.raises(FileNotFoundError):
            LoRAForgeConfig.from_yaml(tmp_path / "absent.yaml")

    def test_empty_file(self, tmp_path):
        from loraforge.config import LoRAForgeConfig
        from loraforge.errors import ConfigurationError

        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            LoRAForgeConfig.from_yaml(path)

    def test_unknown_key(self, tmp_path):
        from loraforge.config import LoRAForgeConfig
        from loraforge.errors import ConfigurationError

        path = tmp_path / "bad.yaml"
        path.write_text("adapter:\n  rnak: 8\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            LoRAForgeConfig.from_yaml(path)

    def test_invalid_value_in_file(self, tmp_path):
        from loraforge.config import LoRAForgeConfig
        from loraforge.errors import ConfigurationError

        path = tmp_path / "bad.yaml"
        path.write_text("training:\n  batch_size: 0\n", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            LoRAForgeConfig.from_yaml(path)

    def test_shipped_default_config(self):
        from loraforge.config import LoRAForgeConfig

        path = Path(__file__).resolve().parent.parent / "configs" / "default.yaml"
        config = LoRAForgeConfig.from_yaml(path)
        assert config.adapter.rank == 16
        assert config.training.architecture == "llama"


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
