"""
GGUF format constants and metadata keys.

Only the subset the adapter engine reads and writes is listed; the numeric
values match the GGUF v3 format read by llama.cpp.
"""

from __future__ import annotations

from enum import IntEnum

GGUF_MAGIC = 0x46554747  # "GGUF" read as a little-endian u32
GGUF_VERSION = 3
GGUF_DEFAULT_ALIGNMENT = 32


class GGUFValueType(IntEnum):
    UINT8 = 0
    INT8 = 1
    UINT16 = 2
    INT16 = 3
    UINT32 = 4
    INT32 = 5
    FLOAT32 = 6
    BOOL = 7
    STRING = 8
    ARRAY = 9
    UINT64 = 10
    INT64 = 11
    FLOAT64 = 12

    @staticmethod
    def get_type(value: object) -> GGUFValueType:
        """Infer the value type of a Python object."""
        # bool before int: bool is an int subclass
        if isinstance(value, bool):
            return GGUFValueType.BOOL
        if isinstance(value, str):
            return GGUFValueType.STRING
        if isinstance(value, int):
            return GGUFValueType.INT32
        if isinstance(value, float):
            return GGUFValueType.FLOAT32
        if isinstance(value, (list, tuple)):
            return GGUFValueType.ARRAY
        raise ValueError(f"Unknown GGUF value type for {type(value).__name__}")


# struct format character per scalar value type
VALUE_TYPE_FORMATS = {
    GGUFValueType.UINT8: "B",
    GGUFValueType.INT8: "b",
    GGUFValueType.UINT16: "H",
    GGUFValueType.INT16: "h",
    GGUFValueType.UINT32: "I",
    GGUFValueType.INT32: "i",
    GGUFValueType.FLOAT32: "f",
    GGUFValueType.BOOL: "?",
    GGUFValueType.UINT64: "Q",
    GGUFValueType.INT64: "q",
    GGUFValueType.FLOAT64: "d",
}


class GGMLQuantizationType(IntEnum):
    F32 = 0
    F16 = 1
    Q4_0 = 2
    Q4_1 = 3
    Q5_0 = 6
    Q5_1 = 7
    Q8_0 = 8
    Q8_1 = 9
    BF16 = 30


# numpy dtype names for the tensor types the engine can read and write
TENSOR_TYPE_DTYPES = {
    GGMLQuantizationType.F32: "float32",
    GGMLQuantizationType.F16: "float16",
}


class GGUFEndian(IntEnum):
    LITTLE = 0
    BIG = 1


class Keys:
    class General:
        TYPE = "general.type"
        ARCHITECTURE = "general.architecture"
        ALIGNMENT = "general.alignment"
        NAME = "general.name"
        AUTHOR = "general.author"
        DESCRIPTION = "general.description"

    class Adapter:
        TYPE = "adapter.type"
        LORA_ALPHA = "adapter.lora.alpha"


# general.type values
GGUF_TYPE_ADAPTER = "adapter"
GGUF_TYPE_MODEL = "model"

# adapter.type values
ADAPTER_TYPE_LORA = "lora"
