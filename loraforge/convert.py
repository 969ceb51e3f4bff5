"""
LoRAForge PEFT Conversion
=========================
Moves adapters between the Hugging Face PEFT layout and the GGUF adapter
container.

PEFT layout (a directory):
    adapter_config.json          {"r": 16, "lora_alpha": 32, "target_modules": [...]}
    adapter_model.safetensors    base_model.model.model.layers.3.self_attn.q_proj.lora_A.weight  [r, in]
                                 base_model.model.model.layers.3.self_attn.q_proj.lora_B.weight  [out, r]

GGUF names:
    layers.3.self_attn.q_proj   →  blk.3.attn_q.weight
    layers.0.mlp.down_proj      →  blk.0.ffn_down.weight
    embed_tokens                →  token_embd.weight
    lm_head                     →  output.weight

PEFT already stores A as [r, in] and B as [out, r], the same logical shapes
the serializer writes, so no transposition is needed in either direction.

Usage:
    >>> convert_peft_adapter("checkpoints/my-lora", "my-lora.gguf")
    >>> export_peft(adapters, alpha=32.0, output_dir="exported-lora")
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Optional, Union

import torch
from safetensors.torch import load_file, save_file

from loraforge.adapter.adapter_set import PROJECTION_TENSOR_NAMES, AdapterSet
from loraforge.adapter.module import AdapterModule
from loraforge.adapter.serializer import AdapterSerializer, parse_module_name

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

ADAPTER_CONFIG_FILE = "adapter_config.json"
SAFETENSORS_FILE = "adapter_model.safetensors"
BIN_FILE = "adapter_model.bin"

DEFAULT_LORA_ALPHA = 16.0

ATTENTION_PROJECTIONS = ("q_proj", "k_proj", "v_proj", "o_proj")

_LAYER_PATTERN = re.compile(r"layers?\.(\d+)")
_LORA_SUFFIXES = (
    (".lora_A.weight", "a"),
    (".lora_B.weight", "b"),
    (".lora_embedding_A", "a"),
    (".lora_embedding_B", "b"),
)


def peft_to_gguf_name(peft_name: str) -> str:
    """
    Map a PEFT module path (LoRA suffix already stripped) to the GGUF
    tensor name of the weight it adapts.
    """
    name = peft_name.replace(".default", "")
    if "embed_tokens" in name:
        return "token_embd.weight"
    if "lm_head" in name:
        return "output.weight"

    match = _LAYER_PATTERN.search(name)
    if match is not None:
        layer = int(match.group(1))
        for projection, stem in PROJECTION_TENSOR_NAMES.items():
            if name.endswith(f".{projection}"):
                return f"blk.{layer}.{stem}.weight"

    cleaned = name.replace("base_model.model.", "").replace("model.", "")
    return cleaned if cleaned.endswith(".weight") else cleaned + ".weight"


def gguf_to_peft_name(gguf_name: str) -> Optional[str]:
    """
    Inverse of :func:`peft_to_gguf_name` for block projections; None for
    tensors outside the transformer blocks.
    """
    layer, projection = parse_module_name(gguf_name)
    if layer is None or projection not in PROJECTION_TENSOR_NAMES:
        return None
    group = "self_attn" if projection in ATTENTION_PROJECTIONS else "mlp"
    return f"base_model.model.model.layers.{layer}.{group}.{projection}"


def _split_lora_name(name: str) -> tuple[Optional[str], Optional[str]]:
    for suffix, part in _LORA_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)], part
    return None, None


def _read_adapter_config(adapter_dir: Path) -> dict:
    path = adapter_dir / ADAPTER_CONFIG_FILE
    if not path.exists():
        logger.warning(f"{ADAPTER_CONFIG_FILE} not found in {adapter_dir}, using defaults")
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _read_weights(adapter_dir: Path) -> dict[str, torch.Tensor]:
    safetensors_path = adapter_dir / SAFETENSORS_FILE
    if safetensors_path.exists():
        return load_file(str(safetensors_path))

    bin_path = adapter_dir / BIN_FILE
    if bin_path.exists():
        return torch.load(bin_path, map_location="cpu", weights_only=True)

    raise FileNotFoundError(
        f"No {SAFETENSORS_FILE} or {BIN_FILE} found in {adapter_dir}"
    )


def load_peft_adapter(adapter_dir: PathLike) -> tuple[AdapterSet, float]:
    """
    Read a PEFT adapter directory into an AdapterSet.

    Returns
    -------
    (AdapterSet, float)
        Modules ordered by layer then name, and the LoRA alpha
        (``lora_alpha`` from the config, 16.0 when absent).

    Raises
    ------
    FileNotFoundError
        If the directory holds no adapter weights.
    ValueError
        If no complete A/B pair is found or a pair's ranks disagree.
    """
    adapter_dir = Path(adapter_dir)
    adapter_config = _read_adapter_config(adapter_dir)
    alpha = float(adapter_config.get("lora_alpha", DEFAULT_LORA_ALPHA))

    pairs: dict[str, dict[str, torch.Tensor]] = {}
    for name, tensor in _read_weights(adapter_dir).items():
        base, part = _split_lora_name(name)
        if base is None:
            if not name.endswith(".base_layer.weight"):
                logger.warning(f"Unexpected tensor name pattern: {name}")
            continue
        pairs.setdefault(base, {})[part] = tensor

    complete = {}
    for base, parts in pairs.items():
        if "a" not in parts or "b" not in parts:
            logger.warning(
                f"Incomplete LoRA tensor: {base} (has A: {'a' in parts}, "
                f"has B: {'b' in parts})"
            )
            continue
        complete[base] = parts

    if not complete:
        raise ValueError(f"No complete LoRA tensor pairs found in {adapter_dir}")

    modules = []
    for base, parts in complete.items():
        gguf_name = peft_to_gguf_name(base)
        layer, projection = parse_module_name(gguf_name)
        lora_a = parts["a"].to(torch.float32)
        lora_b = parts["b"].to(torch.float32)
        modules.append(AdapterModule.from_tensors(
            gguf_name, lora_a, lora_b, layer=layer, projection=projection,
        ))

    modules.sort(key=lambda m: (m.layer if m.layer is not None else -1, m.name))
    adapters = AdapterSet(modules)

    logger.info(
        f"Read {len(adapters)} LoRA pairs from {adapter_dir} "
        f"(alpha={alpha}, rank={adapter_config.get('r', modules[0].rank)})"
    )
    return adapters, alpha


def convert_peft_adapter(
    adapter_dir: PathLike,
    output_path: PathLike,
    architecture: str = "llama",
) -> Path:
    """
    Convert a PEFT adapter directory into a GGUF adapter container.

    Raises
    ------
    PersistenceError
        If the container cannot be written.
    """
    adapters, alpha = load_peft_adapter(adapter_dir)
    return AdapterSerializer.save(adapters, alpha, output_path, architecture=architecture)


def export_peft(
    adapter_set: AdapterSet,
    alpha: float,
    output_dir: PathLike,
    base_model_name: Optional[str] = None,
) -> Path:
    """
    Write ``adapter_set`` as a PEFT adapter directory.

    Only block projections (``blk.N.<stem>.weight``) are exported; other
    modules are skipped with a warning.

    Raises
    ------
    ValueError
        If the modules do not share one rank, or none can be exported.
    """
    ranks = {module.rank for module in adapter_set.modules()}
    if len(ranks) > 1:
        raise ValueError(f"PEFT export needs a single rank, got {sorted(ranks)}")

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    tensors = {}
    target_modules = []
    for name, lora_a, lora_b in adapter_set.snapshot():
        peft_name = gguf_to_peft_name(name)
        if peft_name is None:
            logger.warning(f"No PEFT mapping for {name}, skipping")
            continue
        tensors[f"{peft_name}.lora_A.weight"] = lora_a.contiguous()
        tensors[f"{peft_name}.lora_B.weight"] = lora_b.contiguous()
        projection = peft_name.rsplit(".", 1)[-1]
        if projection not in target_modules:
            target_modules.append(projection)

    if not tensors:
        raise ValueError("No adapter modules could be mapped to PEFT names")

    save_file(tensors, str(output_dir / SAFETENSORS_FILE))

    adapter_config = {
        "peft_type": "LORA",
        "task_type": "CAUSAL_LM",
        "base_model_name_or_path": base_model_name,
        "r": ranks.pop(),
        "lora_alpha": alpha,
        "lora_dropout": 0.0,
        "bias": "none",
        "target_modules": target_modules,
    }
    with open(output_dir / ADAPTER_CONFIG_FILE, "w", encoding="utf-8") as f:
        json.dump(adapter_config, f, indent=2)

    logger.info(
        f"Exported {len(tensors) // 2} LoRA pairs to {output_dir} "
        f"(targets={','.join(target_modules)})"
    )
    return output_dir
