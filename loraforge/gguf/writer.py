"""
GGUF Writer
===========
Writes GGUF containers: header, metadata key/values, tensor-info table, and
the aligned tensor-data section.

File Layout:
    ┌───────────────────────────────────────────────┐
    │ magic u32 | version u32 | n_tensors u64 | n_kv u64
    ├───────────────────────────────────────────────┤
    │ n_kv × (key string, value type u32, value)    │
    ├───────────────────────────────────────────────┤
    │ n_tensors × (name, n_dims u32, dims u64[] in  │
    │              reverse order, type u32, offset) │
    ├── zero padding to alignment ──────────────────┤
    │ tensor 0 data | pad | tensor 1 data | pad ... │
    └───────────────────────────────────────────────┘

Tensor data MUST be written in the order the tensor infos were declared:
offsets in the table are computed from that order. The writer enforces it.

The writer moves through fixed states, one section at a time:

    NO_FILE → EMPTY → HEADER → KV_DATA → TI_DATA → WEIGHTS

Usage:
    >>> with GGUFWriter("adapter.gguf", arch="llama") as writer:
    ...     writer.add_type("adapter")
    ...     writer.add_tensor_info("t.lora_a", (4, 16), GGMLQuantizationType.F32, 256)
    ...     writer.write_header_to_file()
    ...     writer.write_kv_data_to_file()
    ...     writer.write_ti_data_to_file()
    ...     writer.write_tensor_data(array)
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Any, BinaryIO, Optional, Sequence, Union

import numpy as np

from loraforge.gguf.constants import (
    GGUF_DEFAULT_ALIGNMENT,
    GGUF_MAGIC,
    GGUF_VERSION,
    TENSOR_TYPE_DTYPES,
    VALUE_TYPE_FORMATS,
    GGMLQuantizationType,
    GGUFEndian,
    GGUFValueType,
    Keys,
)

logger = logging.getLogger(__name__)


class WriterState(Enum):
    NO_FILE = auto()
    EMPTY = auto()
    HEADER = auto()
    KV_DATA = auto()
    TI_DATA = auto()
    WEIGHTS = auto()


@dataclass
class GGUFValue:
    value: Any
    type: GGUFValueType
    sub_type: Optional[GGUFValueType] = None


@dataclass
class TensorInfo:
    shape: tuple[int, ...]
    dtype: GGMLQuantizationType
    nbytes: int


def ggml_pad(size: int, alignment: int) -> int:
    """Round ``size`` up to the next multiple of ``alignment``."""
    return ((size + alignment - 1) // alignment) * alignment


class GGUFWriter:
    """
    Streaming GGUF writer.

    Parameters
    ----------
    path : str or Path
        Output file. Parent directories are created on open.
    arch : str
        Model architecture, stored as ``general.architecture`` (always the
        first metadata key).
    endianess : GGUFEndian
        Byte order for every scalar and tensor element.
    alignment : int
        Alignment of the tensor-data section and of each tensor within it.
    """

    def __init__(
        self,
        path: Union[str, Path],
        arch: str,
        endianess: GGUFEndian = GGUFEndian.LITTLE,
        alignment: int = GGUF_DEFAULT_ALIGNMENT,
    ):
        self.path = Path(path)
        self.arch = arch
        self.endianess = endianess
        self.alignment = alignment
        self.kv_data: dict[str, GGUFValue] = {}
        self.tensors: dict[str, TensorInfo] = {}
        self.state = WriterState.NO_FILE
        self._fout: Optional[BinaryIO] = None
        self._tensor_names: list[str] = []
        self._next_tensor = 0
        self._position = 0

        self.add_architecture()

    # ─── Packing ────────────────────────────────────────────────────────

    def _pack(self, fmt: str, value: Any) -> bytes:
        prefix = "<" if self.endianess == GGUFEndian.LITTLE else ">"
        return struct.pack(prefix + fmt, value)

    def _pack_string(self, value: str) -> bytes:
        encoded = value.encode("utf-8")
        return self._pack("Q", len(encoded)) + encoded

    def _pack_val(
        self,
        value: Any,
        vtype: GGUFValueType,
        add_vtype: bool,
        sub_type: Optional[GGUFValueType] = None,
    ) -> bytes:
        out = self._pack("I", vtype) if add_vtype else b""

        if vtype == GGUFValueType.STRING:
            out += self._pack_string(value)
        elif vtype == GGUFValueType.ARRAY:
            if sub_type is None:
                sub_type = (
                    GGUFValueType.get_type(value[0]) if value
                    else GGUFValueType.STRING
                )
            out += self._pack("I", sub_type)
            out += self._pack("Q", len(value))
            for item in value:
                out += self._pack_val(item, sub_type, add_vtype=False)
        elif vtype in VALUE_TYPE_FORMATS:
            out += self._pack(VALUE_TYPE_FORMATS[vtype], value)
        else:
            raise ValueError(f"Unsupported GGUF value type: {vtype}")

        return out

    # ─── Metadata ───────────────────────────────────────────────────────

    def add_key_value(
        self,
        key: str,
        value: Any,
        vtype: GGUFValueType,
        sub_type: Optional[GGUFValueType] = None,
    ) -> None:
        if key in self.kv_data:
            raise ValueError(f"Duplicated key name {key!r}")
        if self.state not in (WriterState.NO_FILE, WriterState.EMPTY):
            raise ValueError(
                f"Cannot add metadata after the header was written "
                f"(state={self.state.name})"
            )
        self.kv_data[key] = GGUFValue(value, vtype, sub_type)

    def add_string(self, key: str, value: str) -> None:
        self.add_key_value(key, value, GGUFValueType.STRING)

    def add_float32(self, key: str, value: float) -> None:
        self.add_key_value(key, value, GGUFValueType.FLOAT32)

    def add_uint32(self, key: str, value: int) -> None:
        self.add_key_value(key, value, GGUFValueType.UINT32)

    def add_int32(self, key: str, value: int) -> None:
        self.add_key_value(key, value, GGUFValueType.INT32)

    def add_bool(self, key: str, value: bool) -> None:
        self.add_key_value(key, value, GGUFValueType.BOOL)

    def add_array(self, key: str, value: Sequence[Any]) -> None:
        self.add_key_value(key, list(value), GGUFValueType.ARRAY)

    def add_architecture(self) -> None:
        self.add_string(Keys.General.ARCHITECTURE, self.arch)

    def add_type(self, type_name: str) -> None:
        self.add_string(Keys.General.TYPE, type_name)

    def add_name(self, name: str) -> None:
        self.add_string(Keys.General.NAME, name)

    def add_description(self, description: str) -> None:
        self.add_string(Keys.General.DESCRIPTION, description)

    def add_lora_alpha(self, alpha: float) -> None:
        self.add_float32(Keys.Adapter.LORA_ALPHA, alpha)

    # ─── Tensor infos ───────────────────────────────────────────────────

    def add_tensor_info(
        self,
        name: str,
        shape: Sequence[int],
        dtype: GGMLQuantizationType,
        nbytes: int,
    ) -> None:
        """
        Declare a tensor. ``shape`` is the logical row-major shape; it is
        stored reversed (GGML ``ne`` order) on disk.
        """
        if name in self.tensors:
            raise ValueError(f"Duplicated tensor name {name!r}")
        if self.state not in (WriterState.NO_FILE, WriterState.EMPTY):
            raise ValueError(
                f"Cannot add tensor info after the header was written "
                f"(state={self.state.name})"
            )
        self.tensors[name] = TensorInfo(tuple(int(d) for d in shape), dtype, int(nbytes))
        self._tensor_names.append(name)

    # ─── Sections ───────────────────────────────────────────────────────

    def open_output_file(self) -> None:
        if self.state != WriterState.NO_FILE:
            raise ValueError(f"Output file already open, got state {self.state.name}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._fout = open(self.path, "wb")
        self._position = 0
        self.state = WriterState.EMPTY

    def _write(self, data: bytes) -> None:
        self._fout.write(data)
        self._position += len(data)

    def write_header_to_file(self) -> None:
        if self.state == WriterState.NO_FILE:
            self.open_output_file()
        if self.state != WriterState.EMPTY:
            raise ValueError(f"Expected output file to be empty, got {self.state.name}")

        # magic is always little-endian so readers can detect byte order
        self._write(struct.pack("<I", GGUF_MAGIC))
        self._write(self._pack("I", GGUF_VERSION))
        self._write(self._pack("Q", len(self.tensors)))
        self._write(self._pack("Q", len(self.kv_data)))
        self.state = WriterState.HEADER

    def write_kv_data_to_file(self) -> None:
        if self.state != WriterState.HEADER:
            raise ValueError(f"Expected output file to contain the header, got {self.state.name}")

        for key, val in self.kv_data.items():
            self._write(self._pack_val(key, GGUFValueType.STRING, add_vtype=False))
            self._write(self._pack_val(val.value, val.type, add_vtype=True, sub_type=val.sub_type))
        self.state = WriterState.KV_DATA

    def write_ti_data_to_file(self) -> None:
        """Write the tensor-info table, then pad up to the data section."""
        if self.state != WriterState.KV_DATA:
            raise ValueError(f"Expected output file to contain KV data, got {self.state.name}")

        offset = 0
        for name in self._tensor_names:
            ti = self.tensors[name]
            self._write(self._pack_string(name))
            self._write(self._pack("I", len(ti.shape)))
            for dim in reversed(ti.shape):
                self._write(self._pack("Q", dim))
            self._write(self._pack("I", ti.dtype))
            self._write(self._pack("Q", offset))
            offset += ggml_pad(ti.nbytes, self.alignment)

        self._write_padding()
        self.state = WriterState.TI_DATA

    def write_tensor_data(self, tensor: Any, name: Optional[str] = None) -> None:
        """
        Write the next declared tensor's data, followed by alignment padding.

        Parameters
        ----------
        tensor : array-like
            numpy array or torch tensor holding the values, in row-major
            order of the declared shape.
        name : str or None
            When given, must equal the next declared tensor name.
        """
        if self.state not in (WriterState.TI_DATA, WriterState.WEIGHTS):
            raise ValueError(f"Expected tensor info to be written, got {self.state.name}")
        if self._next_tensor >= len(self._tensor_names):
            raise ValueError("More tensors written than declared")

        expected_name = self._tensor_names[self._next_tensor]
        if name is not None and name != expected_name:
            raise ValueError(
                f"Tensor data out of order: expected {expected_name!r}, got {name!r}"
            )
        ti = self.tensors[expected_name]

        if hasattr(tensor, "detach"):
            tensor = tensor.detach().cpu().numpy()
        byteorder = "<" if self.endianess == GGUFEndian.LITTLE else ">"
        array = np.ascontiguousarray(
            tensor, dtype=np.dtype(TENSOR_TYPE_DTYPES[ti.dtype]).newbyteorder(byteorder)
        )
        if tuple(array.shape) != ti.shape:
            raise ValueError(
                f"{expected_name}: data shape {tuple(array.shape)} does not "
                f"match declared shape {ti.shape}"
            )
        data = array.tobytes()
        if len(data) != ti.nbytes:
            raise ValueError(
                f"{expected_name}: {len(data)} bytes of data, "
                f"{ti.nbytes} declared"
            )

        self._write(data)
        self._write_padding()
        self._next_tensor += 1
        self.state = WriterState.WEIGHTS

    def _write_padding(self) -> None:
        padding = ggml_pad(self._position, self.alignment) - self._position
        if padding:
            self._write(b"\x00" * padding)

    # ─── Lifecycle ──────────────────────────────────────────────────────

    def close(self) -> None:
        if self._fout is not None:
            self._fout.close()
            self._fout = None
        self.state = WriterState.NO_FILE

    def __enter__(self) -> GGUFWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc_type is None and self._next_tensor != len(self._tensor_names):
            self.close()
            raise ValueError(
                f"Only {self._next_tensor} of {len(self._tensor_names)} "
                f"declared tensors were written to {self.path}"
            )
        self.close()
