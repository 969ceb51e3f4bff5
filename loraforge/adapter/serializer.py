"""
LoRAForge Adapter Serializer
=============================
Writes an AdapterSet to a GGUF "adapter" container and reads it back.

Container contents:
    metadata (in this order)
        general.architecture   string   e.g. "llama"
        general.type           string   "adapter"
        adapter.type           string   "lora"
        adapter.lora.alpha     float32
    tensors (module insertion order, A before B)
        <name>.lora_a          F32  [rank, input_dim]
        <name>.lora_b          F32  [output_dim, rank]

The weights are snapshotted before the file is opened, so a checkpoint
always reflects one consistent point of training.

Usage:
    >>> AdapterSerializer.save(adapters, alpha=32.0, path="final_adapter.gguf")
    >>> adapters = AdapterSerializer.load("final_adapter.gguf")
    >>> AdapterSerializer.read_alpha("final_adapter.gguf")
    32.0
"""

from __future__ import annotations

import logging
import os
import re
import struct
from pathlib import Path
from typing import Union

import torch

from loraforge.adapter.adapter_set import PROJECTION_TENSOR_NAMES, AdapterSet
from loraforge.adapter.module import AdapterModule
from loraforge.config import FLOAT32_MAX
from loraforge.errors import ConfigurationError, PersistenceError
from loraforge.gguf.constants import (
    ADAPTER_TYPE_LORA,
    GGUF_TYPE_ADAPTER,
    GGMLQuantizationType,
    Keys,
)
from loraforge.gguf.reader import GGUFReader
from loraforge.gguf.writer import GGUFWriter

logger = logging.getLogger(__name__)

LORA_A_SUFFIX = ".lora_a"
LORA_B_SUFFIX = ".lora_b"

_BLOCK_NAME = re.compile(r"^blk\.(\d+)\.(.+)\.weight$")
_STEM_TO_PROJECTION = {stem: proj for proj, stem in PROJECTION_TENSOR_NAMES.items()}


def parse_module_name(name: str) -> tuple:
    """``blk.3.attn_v.weight`` → (3, "v_proj"); (None, None) if not a block tensor."""
    match = _BLOCK_NAME.match(name)
    if match is None:
        return None, None
    stem = match.group(2)
    return int(match.group(1)), _STEM_TO_PROJECTION.get(stem, stem)


class AdapterSerializer:
    """Static save/load helpers for GGUF adapter containers."""

    @staticmethod
    def save(
        adapter_set: AdapterSet,
        alpha: float,
        path: Union[str, Path],
        architecture: str = "llama",
    ) -> Path:
        """
        Write ``adapter_set`` to ``path``.

        Parameters
        ----------
        adapter_set : AdapterSet
            Modules to write, in their insertion order.
        alpha : float
            Stored as ``adapter.lora.alpha``.
        path : str or Path
            Output file; parent directories are created. The container is
            written to ``<path>.tmp`` and renamed over ``path`` once complete.
        architecture : str
            Stored as ``general.architecture``.

        Returns
        -------
        Path
            The written file.

        Raises
        ------
        ConfigurationError
            If ``alpha`` does not fit a positive float32.
        PersistenceError
            If the file cannot be written. Any existing file at ``path`` is
            left as it was.
        """
        path = Path(path)
        if not 0 < alpha <= FLOAT32_MAX:
            raise ConfigurationError(
                f"alpha must be a positive float32 value, got {alpha}"
            )
        snapshot = adapter_set.snapshot()
        # a failed write never leaves a truncated container under the final name
        tmp_path = path.with_name(path.name + ".tmp")

        try:
            with GGUFWriter(tmp_path, arch=architecture) as writer:
                writer.add_type(GGUF_TYPE_ADAPTER)
                writer.add_string(Keys.Adapter.TYPE, ADAPTER_TYPE_LORA)
                writer.add_lora_alpha(float(alpha))

                for name, lora_a, lora_b in snapshot:
                    for suffix, tensor in ((LORA_A_SUFFIX, lora_a), (LORA_B_SUFFIX, lora_b)):
                        writer.add_tensor_info(
                            name + suffix,
                            tuple(tensor.shape),
                            GGMLQuantizationType.F32,
                            tensor.numel() * 4,
                        )

                writer.write_header_to_file()
                writer.write_kv_data_to_file()
                writer.write_ti_data_to_file()
                for name, lora_a, lora_b in snapshot:
                    writer.write_tensor_data(lora_a, name=name + LORA_A_SUFFIX)
                    writer.write_tensor_data(lora_b, name=name + LORA_B_SUFFIX)
            os.replace(tmp_path, path)
        except (OSError, ValueError, OverflowError, struct.error) as e:
            if tmp_path.exists():
                tmp_path.unlink()
            raise PersistenceError(
                f"Failed to write adapter to {path}: {e}", path=path
            ) from e

        logger.info(
            f"Saved {len(snapshot)} LoRA modules to {path} "
            f"({path.stat().st_size / 1024:.1f} KB)"
        )
        return path

    @staticmethod
    def _open(path: Union[str, Path]) -> GGUFReader:
        path = Path(path)
        try:
            reader = GGUFReader(path)
        except (OSError, ValueError, struct.error) as e:
            raise PersistenceError(
                f"Failed to read adapter from {path}: {e}", path=path
            ) from e

        gguf_type = reader.get_value(Keys.General.TYPE)
        if gguf_type != GGUF_TYPE_ADAPTER:
            raise PersistenceError(
                f"{path} is not an adapter container "
                f"(general.type={gguf_type!r})",
                path=path,
            )
        adapter_type = reader.get_value(Keys.Adapter.TYPE)
        if adapter_type != ADAPTER_TYPE_LORA:
            raise PersistenceError(
                f"{path} holds a {adapter_type!r} adapter, expected 'lora'",
                path=path,
            )
        return reader

    @staticmethod
    def read_alpha(path: Union[str, Path]) -> float:
        """Return ``adapter.lora.alpha`` of the container at ``path``."""
        reader = AdapterSerializer._open(path)
        alpha = reader.get_value(Keys.Adapter.LORA_ALPHA)
        if alpha is None:
            raise PersistenceError(f"{path} has no adapter.lora.alpha", path=path)
        return float(alpha)

    @staticmethod
    def load(path: Union[str, Path]) -> AdapterSet:
        """
        Read a container written by :meth:`save`.

        Modules are rebuilt in container order with fresh optimizer state.

        Raises
        ------
        PersistenceError
            If the file cannot be parsed, is not a LoRA adapter, holds
            an A tensor without its B partner (or vice versa), or repeats
            a tensor name.
        """
        reader = AdapterSerializer._open(path)

        pairs: dict[str, dict[str, torch.Tensor]] = {}
        for tensor in reader.tensors:
            for suffix in (LORA_A_SUFFIX, LORA_B_SUFFIX):
                if tensor.name.endswith(suffix):
                    base = tensor.name[: -len(suffix)]
                    if suffix in pairs.get(base, {}):
                        raise PersistenceError(
                            f"{path}: tensor {tensor.name!r} appears more "
                            f"than once",
                            path=path,
                        )
                    pairs.setdefault(base, {})[suffix] = torch.from_numpy(
                        tensor.data.astype("float32")
                    )
                    break
            else:
                raise PersistenceError(
                    f"{path}: unexpected tensor {tensor.name!r} in adapter "
                    f"container",
                    path=path,
                )

        adapters = AdapterSet()
        for name, parts in pairs.items():
            if LORA_A_SUFFIX not in parts or LORA_B_SUFFIX not in parts:
                missing = LORA_B_SUFFIX if LORA_A_SUFFIX in parts else LORA_A_SUFFIX
                raise PersistenceError(
                    f"{path}: tensor {name}{missing} is missing", path=path
                )
            layer, projection = parse_module_name(name)
            try:
                module = AdapterModule.from_tensors(
                    name,
                    parts[LORA_A_SUFFIX],
                    parts[LORA_B_SUFFIX],
                    layer=layer,
                    projection=projection,
                )
            except ValueError as e:
                raise PersistenceError(f"{path}: {e}", path=path) from e
            adapters.add(module)

        logger.info(f"Loaded {len(adapters)} LoRA modules from {path}")
        return adapters
