"""Base-model contract and the bundled reference base model."""

from loraforge.model.base import (
    ActivationProvider,
    BaseModel,
    GaussianActivationProvider,
)
from loraforge.model.reference import ReferenceBaseModel

__all__ = [
    "ActivationProvider",
    "BaseModel",
    "GaussianActivationProvider",
    "ReferenceBaseModel",
]
