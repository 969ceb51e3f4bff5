"""
LoRAForge Test Suite — GGUF Container
======================================
Low-level writer/reader behaviour and the adapter serializer built on top.

Run with:
    python -m pytest tests/test_gguf.py -v
"""

import struct
import sys
from pathlib import Path

import numpy as np
import pytest
import torch

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))


def _two_module_set():
    """Two modules of different shapes with non-zero A and B."""
    from loraforge.adapter.adapter_set import AdapterSet
    from loraforge.adapter.module import AdapterModule

    generator = torch.Generator().manual_seed(0)
    m1 = AdapterModule("m1", 3, 5, 2, generator=generator)
    m2 = AdapterModule("m2", 4, 6, 3, generator=generator)
    m1.lora_b = torch.randn(5, 2, generator=generator)
    m2.lora_b = torch.randn(6, 3, generator=generator)
    return AdapterSet([m1, m2])


# =============================================================================
# Writer / Reader
# =============================================================================

class TestWriterReader:
    """Raw GGUF container handling."""

    def test_metadata_round_trip(self, tmp_path):
        from loraforge.gguf.constants import GGUFValueType
        from loraforge.gguf.reader import GGUFReader
        from loraforge.gguf.writer import GGUFWriter

        path = tmp_path / "meta.gguf"
        with GGUFWriter(path, arch="llama") as writer:
            writer.add_name("test")
            writer.add_uint32("test.count", 7)
            writer.add_int32("test.offset", -3)
            writer.add_bool("test.flag", True)
            writer.add_float32("test.scale", 0.5)
            writer.add_array("test.tags", ["a", "bc"])
            writer.write_header_to_file()
            writer.write_kv_data_to_file()
            writer.write_ti_data_to_file()

        reader = GGUFReader(path)
        assert reader.version == 3
        assert reader.get_value("general.architecture") == "llama"
        assert reader.get_value("general.name") == "test"
        assert reader.get_value("test.count") == 7
        assert reader.get_value("test.offset") == -3
        assert reader.get_value("test.flag") is True
        assert reader.get_value("test.scale") == 0.5
        assert reader.get_value("test.tags") == ["a", "bc"]
        assert reader.get_field("test.tags").sub_type == GGUFValueType.STRING
        assert reader.get_value("test.absent", 42) == 42
        assert reader.tensors == []

    def test_architecture_is_first_key(self, tmp_path):
        from loraforge.gguf.reader import GGUFReader
        from loraforge.gguf.writer import GGUFWriter

        path = tmp_path / "order.gguf"
        with GGUFWriter(path, arch="mistral") as writer:
            writer.add_type("model")
            writer.write_header_to_file()
            writer.write_kv_data_to_file()
            writer.write_ti_data_to_file()
        assert list(GGUFReader(path).fields) == ["general.architecture", "general.type"]

    def test_tensor_round_trip_and_alignment(self, tmp_path):
        from loraforge.gguf.constants import GGMLQuantizationType
        from loraforge.gguf.reader import GGUFReader
        from loraforge.gguf.writer import GGUFWriter

        first = np.arange(6, dtype=np.float32).reshape(2, 3)
        second = np.linspace(-1, 1, 5, dtype=np.float32)
        path = tmp_path / "tensors.gguf"
        with GGUFWriter(path, arch="llama") as writer:
            writer.add_tensor_info("first", first.shape, GGMLQuantizationType.F32, first.nbytes)
            writer.add_tensor_info("second", second.shape, GGMLQuantizationType.F32, second.nbytes)
            writer.write_header_to_file()
            writer.write_kv_data_to_file()
            writer.write_ti_data_to_file()
            writer.write_tensor_data(first)
            writer.write_tensor_data(second)

        reader = GGUFReader(path)
        assert [t.name for t in reader.tensors] == ["first", "second"]
        assert np.array_equal(reader.get_tensor("first").data, first)
        assert np.array_equal(reader.get_tensor("second").data, second)
        for tensor in reader.tensors:
            assert tensor.offset % 32 == 0
        assert path.stat().st_size % 32 == 0

    def test_dims_stored_reversed(self, tmp_path):
        from loraforge.gguf.constants import GGMLQuantizationType
        from loraforge.gguf.writer import GGUFWriter

        data = np.zeros((2, 7), dtype=np.float32)
        path = tmp_path / "dims.gguf"
        with GGUFWriter(path, arch="llama") as writer:
            writer.add_tensor_info("t", data.shape, GGMLQuantizationType.F32, data.nbytes)
            writer.write_header_to_file()
            writer.write_kv_data_to_file()
            writer.write_ti_data_to_file()
            writer.write_tensor_data(data)

        raw = path.read_bytes()
        index = raw.index(b"\x01\x00\x00\x00\x00\x00\x00\x00t") + 9
        n_dims, = struct.unpack_from("<I", raw, index)
        assert n_dims == 2
        assert struct.unpack_from("<QQ", raw, index + 4) == (7, 2)

    def test_big_endian_round_trip(self, tmp_path):
        from loraforge.gguf.constants import GGMLQuantizationType, GGUFEndian
        from loraforge.gguf.reader import GGUFReader
        from loraforge.gguf.writer import GGUFWriter

        data = np.array([1.5, -2.25, 3.0], dtype=np.float32)
        path = tmp_path / "big.gguf"
        with GGUFWriter(path, arch="llama", endianess=GGUFEndian.BIG) as writer:
            writer.add_float32("test.scale", 2.0)
            writer.add_tensor_info("t", data.shape, GGMLQuantizationType.F32, data.nbytes)
            writer.write_header_to_file()
            writer.write_kv_data_to_file()
            writer.write_ti_data_to_file()
            writer.write_tensor_data(data)

        assert path.read_bytes()[:4] == b"GGUF"
        reader = GGUFReader(path)
        assert reader.endianess == GGUFEndian.BIG
        assert reader.version == 3
        assert reader.get_value("test.scale") == 2.0
        assert np.array_equal(reader.get_tensor("t").data, data)

    def test_out_of_order_write(self, tmp_path):
        from loraforge.gguf.constants import GGMLQuantizationType
        from loraforge.gguf.writer import GGUFWriter

        data = np.zeros(4, dtype=np.float32)
        with pytest.raises(ValueError, match="out of order"):
            with GGUFWriter(tmp_path / "x.gguf", arch="llama") as writer:
                writer.add_tensor_info("a", data.shape, GGMLQuantizationType.F32, data.nbytes)
                writer.add_tensor_info("b", data.shape, GGMLQuantizationType.F32, data.nbytes)
                writer.write_header_to_file()
                writer.write_kv_data_to_file()
                writer.write_ti_data_to_file()
                writer.write_tensor_data(data, name="b")

    def test_shape_mismatch(self, tmp_path):
        from loraforge.gguf.constants import GGMLQuantizationType
        from loraforge.gguf.writer import GGUFWriter

        with pytest.raises(ValueError, match="shape"):
            with GGUFWriter(tmp_path / "x.gguf", arch="llama") as writer:
                writer.add_tensor_info("a", (2, 2), GGMLQuantizationType.F32, 16)
                writer.write_header_to_file()
                writer.write_kv_data_to_file()
                writer.write_ti_data_to_file()
                writer.write_tensor_data(np.zeros(4, dtype=np.float32))

    def test_missing_tensor_data(self, tmp_path):
        from loraforge.gguf.constants import GGMLQuantizationType
        from loraforge.gguf.writer import GGUFWriter

        with pytest.raises(ValueError, match="declared"):
            with GGUFWriter(tmp_path / "x.gguf", arch="llama") as writer:
                writer.add_tensor_info("a", (4,), GGMLQuantizationType.F32, 16)
                writer.write_header_to_file()
                writer.write_kv_data_to_file()
                writer.write_ti_data_to_file()

    def test_duplicate_key(self, tmp_path):
        from loraforge.gguf.writer import GGUFWriter
        writer = GGUFWriter(tmp_path / "x.gguf", arch="llama")
        with pytest.raises(ValueError):
            writer.add_string("general.architecture", "other")

    def test_bad_magic(self, tmp_path):
        from loraforge.gguf.reader import GGUFReader
        path = tmp_path / "junk.gguf"
        path.write_bytes(b"NOPE" + b"\x00" * 20)
        with pytest.raises(ValueError, match="not a GGUF"):
            GGUFReader(path)

    def test_truncated_file(self, tmp_path):
        from loraforge.gguf.reader import GGUFReader
        path = tmp_path / "short.gguf"
        path.write_bytes(b"GGUF\x03\x00")
        with pytest.raises(ValueError):
            GGUFReader(path)

    def test_ggml_pad(self):
        from loraforge.gguf.writer import ggml_pad
        assert ggml_pad(0, 32) == 0
        assert ggml_pad(1, 32) == 32
        assert ggml_pad(32, 32) == 32
        assert ggml_pad(33, 32) == 64


# =============================================================================
# Adapter Serializer
# =============================================================================

class TestAdapterSerializer:
    """AdapterSet ⇄ GGUF adapter container."""

    def test_round_trip_is_bit_exact(self, tmp_path):
        from loraforge.adapter.serializer import AdapterSerializer

        adapters = _two_module_set()
        path = AdapterSerializer.save(adapters, alpha=16.0, path=tmp_path / "a.gguf")
        loaded = AdapterSerializer.load(path)

        assert loaded.names() == ["m1", "m2"]
        for name in adapters:
            assert torch.equal(loaded[name].lora_a, adapters[name].lora_a)
            assert torch.equal(loaded[name].lora_b, adapters[name].lora_b)
        assert AdapterSerializer.read_alpha(path) == 16.0

    def test_metadata_keys_and_order(self, tmp_path):
        from loraforge.adapter.serializer import AdapterSerializer
        from loraforge.gguf.constants import GGUFValueType
        from loraforge.gguf.reader import GGUFReader

        path = AdapterSerializer.save(
            _two_module_set(), alpha=8.0, path=tmp_path / "a.gguf", architecture="qwen2",
        )
        reader = GGUFReader(path)
        assert list(reader.fields) == [
            "general.architecture",
            "general.type",
            "adapter.type",
            "adapter.lora.alpha",
        ]
        assert reader.get_value("general.architecture") == "qwen2"
        assert reader.get_value("general.type") == "adapter"
        assert reader.get_value("adapter.type") == "lora"
        assert reader.get_field("adapter.lora.alpha").type == GGUFValueType.FLOAT32

    def test_header_bytes(self, tmp_path):
        from loraforge.adapter.serializer import AdapterSerializer

        path = AdapterSerializer.save(_two_module_set(), alpha=8.0, path=tmp_path / "a.gguf")
        raw = path.read_bytes()
        assert raw[:4] == b"GGUF"
        assert struct.unpack_from("<IQQ", raw, 4) == (3, 4, 4)

    def test_tensor_order_and_shapes(self, tmp_path):
        from loraforge.adapter.serializer import AdapterSerializer
        from loraforge.gguf.constants import GGMLQuantizationType
        from loraforge.gguf.reader import GGUFReader

        adapters = _two_module_set()
        path = AdapterSerializer.save(adapters, alpha=8.0, path=tmp_path / "a.gguf")
        reader = GGUFReader(path)

        assert [t.name for t in reader.tensors] == [
            "m1.lora_a", "m1.lora_b", "m2.lora_a", "m2.lora_b",
        ]
        assert [t.shape for t in reader.tensors] == [(2, 3), (5, 2), (3, 4), (6, 3)]
        assert all(t.tensor_type == GGMLQuantizationType.F32 for t in reader.tensors)

        offsets = [t.offset for t in reader.tensors]
        assert offsets == sorted(offsets)
        assert all(offset % 32 == 0 for offset in offsets)

    def test_a_dims_reversed_on_disk(self, tmp_path):
        from loraforge.adapter.serializer import AdapterSerializer

        path = AdapterSerializer.save(_two_module_set(), alpha=8.0, path=tmp_path / "a.gguf")
        raw = path.read_bytes()
        index = raw.index(b"m1.lora_a") + len(b"m1.lora_a")
        assert struct.unpack_from("<I", raw, index) == (2,)
        # A is [rank=2, in=3]; on disk the innermost dimension comes first
        assert struct.unpack_from("<QQ", raw, index + 4) == (3, 2)

    def test_block_names_restore_layer_and_projection(self, tmp_path):
        from loraforge.adapter.adapter_set import AdapterSet
        from loraforge.adapter.serializer import AdapterSerializer

        adapters = AdapterSet.build(2, 8, ["q_proj", "down_proj"], rank=2, seed=0)
        path = AdapterSerializer.save(adapters, alpha=4.0, path=tmp_path / "a.gguf")
        loaded = AdapterSerializer.load(path)

        assert loaded.names() == adapters.names()
        module = loaded["blk.1.ffn_down.weight"]
        assert module.layer == 1
        assert module.projection == "down_proj"

    def test_parse_module_name(self):
        from loraforge.adapter.serializer import parse_module_name
        assert parse_module_name("blk.3.attn_v.weight") == (3, "v_proj")
        assert parse_module_name("blk.12.ffn_gate.weight") == (12, "gate_proj")
        assert parse_module_name("blk.0.custom.weight") == (0, "custom")
        assert parse_module_name("output.weight") == (None, None)

    def test_save_creates_parent_directories(self, tmp_path):
        from loraforge.adapter.serializer import AdapterSerializer
        path = tmp_path / "deep" / "er" / "a.gguf"
        AdapterSerializer.save(_two_module_set(), alpha=1.0, path=path)
        assert path.exists()

    def test_save_failure_raises_persistence_error(self, tmp_path):
        from loraforge.adapter.serializer import AdapterSerializer
        from loraforge.errors import PersistenceError

        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory", encoding="utf-8")
        with pytest.raises(PersistenceError) as info:
            AdapterSerializer.save(_two_module_set(), alpha=1.0, path=blocker / "a.gguf")
        assert info.value.path == blocker / "a.gguf"
        assert isinstance(info.value.__cause__, OSError)

    def test_save_snapshots_weights(self, tmp_path):
        """The written file reflects the weights at call time."""
        from loraforge.adapter.serializer import AdapterSerializer

        adapters = _two_module_set()
        expected = adapters["m1"].lora_b.clone()
        path = AdapterSerializer.save(adapters, alpha=1.0, path=tmp_path / "a.gguf")
        adapters["m1"].lora_b.add_(1.0)
        assert torch.equal(AdapterSerializer.load(path)["m1"].lora_b, expected)

    def test_load_missing_file(self, tmp_path):
        from loraforge.adapter.serializer import AdapterSerializer
        from loraforge.errors import PersistenceError
        with pytest.raises(PersistenceError):
            AdapterSerializer.load(tmp_path / "absent.gguf")

    def test_load_rejects_garbage(self, tmp_path):
        from loraforge.adapter.serializer import AdapterSerializer
        from loraforge.errors import PersistenceError

        path = tmp_path / "junk.gguf"
        path.write_bytes(b"definitely not gguf")
        with pytest.raises(PersistenceError):
            AdapterSerializer.load(path)

    def test_load_rejects_non_adapter(self, tmp_path):
        from loraforge.adapter.serializer import AdapterSerializer
        from loraforge.errors import PersistenceError
        from loraforge.gguf.writer import GGUFWriter

        path = tmp_path / "model.gguf"
        with GGUFWriter(path, arch="llama") as writer:
            writer.add_type("model")
            writer.write_header_to_file()
            writer.write_kv_data_to_file()
            writer.write_ti_data_to_file()

        with pytest.raises(PersistenceError, match="not an adapter"):
            AdapterSerializer.load(path)

    def test_load_rejects_unpaired_tensor(self, tmp_path):
        from loraforge.adapter.serializer import AdapterSerializer
        from loraforge.errors import PersistenceError
        from loraforge.gguf.constants import GGMLQuantizationType
        from loraforge.gguf.writer import GGUFWriter

        data = np.zeros((2, 3), dtype=np.float32)
        path = tmp_path / "half.gguf"
        with GGUFWriter(path, arch="llama") as writer:
            writer.add_type("adapter")
            writer.add_string("adapter.type", "lora")
            writer.add_lora_alpha(8.0)
            writer.add_tensor_info("m1.lora_a", data.shape, GGMLQuantizationType.F32, data.nbytes)
            writer.write_header_to_file()
            writer.write_kv_data_to_file()
            writer.write_ti_data_to_file()
            writer.write_tensor_data(data)

        with pytest.raises(PersistenceError, match="lora_b"):
            AdapterSerializer.load(path)

    def test_load_rejects_duplicate_tensor(self, tmp_path):
        from loraforge.adapter.serializer import AdapterSerializer
        from loraforge.errors import PersistenceError

        path = AdapterSerializer.save(_two_module_set(), alpha=1.0, path=tmp_path / "a.gguf")
        # m2.lora_a renamed in place to repeat m1.lora_a (same name length)
        raw = path.read_bytes()
        assert raw.count(b"m2.lora_a") == 1
        path.write_bytes(raw.replace(b"m2.lora_a", b"m1.lora_a"))

        with pytest.raises(PersistenceError, match="more than once"):
            AdapterSerializer.load(path)

    def test_failed_save_keeps_previous_file(self, tmp_path, monkeypatch):
        """A write that dies midway leaves neither a truncated file nor a temp file."""
        from loraforge.adapter.serializer import AdapterSerializer
        from loraforge.errors import PersistenceError
        from loraforge.gguf.writer import GGUFWriter

        path = AdapterSerializer.save(_two_module_set(), alpha=1.0, path=tmp_path / "final_adapter.gguf")
        previous = path.read_bytes()

        def disk_full(self, tensor, name=None):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(GGUFWriter, "write_tensor_data", disk_full)
        with pytest.raises(PersistenceError):
            AdapterSerializer.save(_two_module_set(), alpha=2.0, path=path)

        assert path.read_bytes() == previous
        assert sorted(p.name for p in tmp_path.iterdir()) == ["final_adapter.gguf"]

    def test_failed_first_save_leaves_nothing(self, tmp_path, monkeypatch):
        from loraforge.adapter.serializer import AdapterSerializer
        from loraforge.errors import PersistenceError
        from loraforge.gguf.writer import GGUFWriter

        def disk_full(self, tensor, name=None):
            raise OSError(28, "No space left on device")

        monkeypatch.setattr(GGUFWriter, "write_tensor_data", disk_full)
        with pytest.raises(PersistenceError):
            AdapterSerializer.save(_two_module_set(), alpha=1.0, path=tmp_path / "a.gguf")
        assert list(tmp_path.iterdir()) == []

    def test_encoding_errors_become_persistence_errors(self, tmp_path, monkeypatch):
        from loraforge.adapter.serializer import AdapterSerializer
        from loraforge.errors import PersistenceError
        from loraforge.gguf.writer import GGUFWriter

        def overflow(self):
            raise OverflowError("float too large to pack with f format")

        monkeypatch.setattr(GGUFWriter, "write_kv_data_to_file", overflow)
        with pytest.raises(PersistenceError) as info:
            AdapterSerializer.save(_two_module_set(), alpha=1.0, path=tmp_path / "a.gguf")
        assert isinstance(info.value.__cause__, OverflowError)
        assert list(tmp_path.iterdir()) == []

    @pytest.mark.parametrize("alpha", [0.0, -1.0, 1e39, float("nan")])
    def test_save_rejects_unstorable_alpha(self, tmp_path, alpha):
        from loraforge.adapter.serializer import AdapterSerializer
        from loraforge.errors import ConfigurationError

        with pytest.raises(ConfigurationError):
            AdapterSerializer.save(_two_module_set(), alpha=alpha, path=tmp_path / "a.gguf")
        assert list(tmp_path.iterdir()) == []


if __name__ == "__main__":
    pytest.main([__file__, "-v", "--tb=short"])
