"""
LoRAForge Errors
================
Exception types raised by the adapter engine.

    LoRAForgeError
      ├── ConfigurationError  (also a ValueError)
      └── PersistenceError

Configuration problems are caught as early as possible (config validation,
AdapterSet construction). Persistence problems wrap the underlying I/O or
decoding failure so callers can tell "the disk said no" apart from a bug.
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional, Union


class LoRAForgeError(Exception):
    """Base class for all LoRAForge errors."""


class ConfigurationError(LoRAForgeError, ValueError):
    """
    Invalid configuration or a dimension mismatch between an adapter module
    and the base model projection it targets.

    Parameters
    ----------
    message : str
        Human-readable description.
    module : str or None
        Fully-qualified adapter module name, when the error concerns one.
    expected : object
        The value the engine expected (e.g. a dimension).
    actual : object
        The value that was actually supplied.
    """

    def __init__(
        self,
        message: str,
        module: Optional[str] = None,
        expected: object = None,
        actual: object = None,
    ):
        super().__init__(message)
        self.module = module
        self.expected = expected
        self.actual = actual


class PersistenceError(LoRAForgeError):
    """
    An adapter container could not be written or read.

    The original exception is available as ``__cause__``.
    """

    def __init__(self, message: str, path: Optional[Union[str, Path]] = None):
        super().__init__(message)
        self.path = Path(path) if path is not None else None
