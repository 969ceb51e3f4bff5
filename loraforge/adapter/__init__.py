"""Low-rank adapter modules, their ordered collection, and persistence."""

from loraforge.adapter.adapter_set import (
    PROJECTION_TENSOR_NAMES,
    AdapterSet,
    tensor_name,
)
from loraforge.adapter.module import AdapterModule
from loraforge.adapter.serializer import AdapterSerializer

__all__ = [
    "PROJECTION_TENSOR_NAMES",
    "AdapterModule",
    "AdapterSet",
    "AdapterSerializer",
    "tensor_name",
]
