"""GGUF container codec: constants, streaming writer, in-memory reader."""

from loraforge.gguf.constants import (
    GGUF_DEFAULT_ALIGNMENT,
    GGUF_MAGIC,
    GGUF_VERSION,
    GGMLQuantizationType,
    GGUFEndian,
    GGUFValueType,
    Keys,
)
from loraforge.gguf.reader import GGUFReader, ReaderField, ReaderTensor
from loraforge.gguf.writer import GGUFWriter, ggml_pad

__all__ = [
    "GGUF_DEFAULT_ALIGNMENT",
    "GGUF_MAGIC",
    "GGUF_VERSION",
    "GGMLQuantizationType",
    "GGUFEndian",
    "GGUFValueType",
    "Keys",
    "GGUFReader",
    "ReaderField",
    "ReaderTensor",
    "GGUFWriter",
    "ggml_pad",
]
