"""
GGUF Reader
===========
Parses a GGUF container into its metadata fields and tensors.

The whole file is read into memory; adapter containers are small. Tensor
data is returned as numpy arrays in logical (row-major) shape, i.e. with the
on-disk GGML dimension order reversed back.

Usage:
    >>> reader = GGUFReader("adapter.gguf")
    >>> reader.get_value("adapter.lora.alpha")
    32.0
    >>> for tensor in reader.tensors:
    ...     print(tensor.name, tensor.shape)
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Union

import numpy as np

from loraforge.gguf.constants import (
    GGUF_DEFAULT_ALIGNMENT,
    GGUF_MAGIC,
    TENSOR_TYPE_DTYPES,
    VALUE_TYPE_FORMATS,
    GGMLQuantizationType,
    GGUFEndian,
    GGUFValueType,
    Keys,
)
from loraforge.gguf.writer import ggml_pad

logger = logging.getLogger(__name__)

SUPPORTED_VERSIONS = (2, 3)


@dataclass
class ReaderField:
    name: str
    type: GGUFValueType
    value: Any
    sub_type: Optional[GGUFValueType] = None


@dataclass
class ReaderTensor:
    name: str
    shape: tuple[int, ...]
    tensor_type: GGMLQuantizationType
    offset: int
    n_bytes: int
    data: np.ndarray


class GGUFReader:
    """
    Read-only view of a GGUF file.

    Parameters
    ----------
    path : str or Path
        Container to parse.

    Attributes
    ----------
    fields : dict[str, ReaderField]
        Metadata in file order.
    tensors : list[ReaderTensor]
        Tensors in tensor-info order.
    version : int
    endianess : GGUFEndian
    alignment : int

    Raises
    ------
    ValueError
        On a bad magic, unsupported version, truncated file, or a tensor
        type the engine cannot decode.
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._buf = self.path.read_bytes()
        self._offset = 0
        self._prefix = "<"

        self.fields: dict[str, ReaderField] = {}
        self.tensors: list[ReaderTensor] = []

        self._parse()

    # ─── Primitive reads ────────────────────────────────────────────────

    def _read(self, fmt: str) -> Any:
        size = struct.calcsize(self._prefix + fmt)
        if self._offset + size > len(self._buf):
            raise ValueError(
                f"Unexpected end of file in {self.path} at byte {self._offset}"
            )
        (value,) = struct.unpack_from(self._prefix + fmt, self._buf, self._offset)
        self._offset += size
        return value

    def _read_string(self) -> str:
        length = self._read("Q")
        end = self._offset + length
        if end > len(self._buf):
            raise ValueError(
                f"String of {length} bytes runs past the end of {self.path}"
            )
        raw = self._buf[self._offset:end]
        self._offset = end
        return raw.decode("utf-8")

    def _read_value(self, vtype: GGUFValueType) -> tuple[Any, Optional[GGUFValueType]]:
        if vtype == GGUFValueType.STRING:
            return self._read_string(), None
        if vtype == GGUFValueType.ARRAY:
            sub_type = GGUFValueType(self._read("I"))
            count = self._read("Q")
            return [self._read_value(sub_type)[0] for _ in range(count)], sub_type
        if vtype in VALUE_TYPE_FORMATS:
            return self._read(VALUE_TYPE_FORMATS[vtype]), None
        raise ValueError(f"Unsupported GGUF value type: {vtype}")

    # ─── Sections ───────────────────────────────────────────────────────

    def _parse(self) -> None:
        magic = self._read("I")
        if magic != GGUF_MAGIC:
            raise ValueError(
                f"{self.path} is not a GGUF file (magic {magic:#010x})"
            )

        version = self._read("I")
        self.endianess = GGUFEndian.LITTLE
        if version & 0xFFFF == 0:
            # written on a big-endian host
            self.endianess = GGUFEndian.BIG
            self._prefix = ">"
            version = struct.unpack(">I", struct.pack("<I", version))[0]
        if version not in SUPPORTED_VERSIONS:
            raise ValueError(
                f"{self.path}: GGUF version {version} is not supported"
            )
        self.version = version

        n_tensors = self._read("Q")
        n_kv = self._read("Q")

        for _ in range(n_kv):
            key = self._read_string()
            vtype = GGUFValueType(self._read("I"))
            value, sub_type = self._read_value(vtype)
            self.fields[key] = ReaderField(key, vtype, value, sub_type)

        self.alignment = int(
            self.get_value(Keys.General.ALIGNMENT, GGUF_DEFAULT_ALIGNMENT)
        )

        infos = []
        for _ in range(n_tensors):
            name = self._read_string()
            n_dims = self._read("I")
            dims = [self._read("Q") for _ in range(n_dims)]
            tensor_type = GGMLQuantizationType(self._read("I"))
            offset = self._read("Q")
            infos.append((name, tuple(reversed(dims)), tensor_type, offset))

        data_start = ggml_pad(self._offset, self.alignment)
        for name, shape, tensor_type, offset in infos:
            self.tensors.append(
                self._build_tensor(name, shape, tensor_type, data_start + offset)
            )

        logger.debug(
            f"Read {self.path}: GGUF v{self.version}, {len(self.fields)} "
            f"fields, {len(self.tensors)} tensors"
        )

    def _build_tensor(
        self,
        name: str,
        shape: tuple[int, ...],
        tensor_type: GGMLQuantizationType,
        offset: int,
    ) -> ReaderTensor:
        if tensor_type not in TENSOR_TYPE_DTYPES:
            raise ValueError(
                f"{name}: tensor type {tensor_type.name} is not supported"
            )
        dtype = np.dtype(TENSOR_TYPE_DTYPES[tensor_type]).newbyteorder(self._prefix)
        count = int(np.prod(shape)) if shape else 1
        n_bytes = count * dtype.itemsize
        if offset + n_bytes > len(self._buf):
            raise ValueError(
                f"{name}: data at byte {offset} ({n_bytes} bytes) runs past "
                f"the end of {self.path}"
            )

        data = np.frombuffer(self._buf, dtype=dtype, count=count, offset=offset)
        data = data.astype(dtype.newbyteorder("="), copy=True).reshape(shape)
        return ReaderTensor(name, shape, tensor_type, offset, n_bytes, data)

    # ─── Lookups ────────────────────────────────────────────────────────

    def get_field(self, key: str) -> Optional[ReaderField]:
        return self.fields.get(key)

    def get_value(self, key: str, default: Any = None) -> Any:
        field = self.fields.get(key)
        return default if field is None else field.value

    def get_tensor(self, name: str) -> ReaderTensor:
        for tensor in self.tensors:
            if tensor.name == name:
                return tensor
        raise KeyError(name)
