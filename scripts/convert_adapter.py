#!/usr/bin/env python3
"""
LoRAForge — Adapter Conversion Script
=====================================
Converts between a PEFT adapter directory and a GGUF adapter container,
or prints what a GGUF adapter contains.

Usage:
    python scripts/convert_adapter.py to-gguf checkpoints/my-lora my-lora.gguf
    python scripts/convert_adapter.py to-peft lora_output/final_adapter.gguf exported-lora
    python scripts/convert_adapter.py inspect lora_output/final_adapter.gguf
"""

import argparse
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from loraforge.adapter.serializer import AdapterSerializer
from loraforge.convert import convert_peft_adapter, export_peft
from loraforge.errors import LoRAForgeError
from loraforge.gguf.reader import GGUFReader
from loraforge.training.metrics import Timer

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def inspect(path: Path) -> None:
    reader = GGUFReader(path)
    print(f"{path}: GGUF v{reader.version}, alignment {reader.alignment}")
    print("Metadata:")
    for field in reader.fields.values():
        print(f"  {field.name:<24} {field.type.name:<8} {field.value}")
    print(f"Tensors ({len(reader.tensors)}):")
    for tensor in reader.tensors:
        print(
            f"  {tensor.name:<40} {tensor.tensor_type.name:<4} "
            f"{list(tensor.shape)}"
        )


def main():
    parser = argparse.ArgumentParser(description="LoRAForge adapter conversion")
    sub = parser.add_subparsers(dest="command", required=True)

    to_gguf = sub.add_parser("to-gguf", help="PEFT directory → GGUF adapter")
    to_gguf.add_argument("adapter_dir", type=str)
    to_gguf.add_argument("output", type=str)
    to_gguf.add_argument("--arch", type=str, default="llama")

    to_peft = sub.add_parser("to-peft", help="GGUF adapter → PEFT directory")
    to_peft.add_argument("adapter", type=str)
    to_peft.add_argument("output_dir", type=str)
    to_peft.add_argument("--base-model", type=str, default=None)

    show = sub.add_parser("inspect", help="Print GGUF metadata and tensors")
    show.add_argument("adapter", type=str)

    args = parser.parse_args()

    try:
        if args.command == "to-gguf":
            with Timer("Conversion"):
                path = convert_peft_adapter(args.adapter_dir, args.output, architecture=args.arch)
            logger.info(f"GGUF adapter written to: {path}")

        elif args.command == "to-peft":
            with Timer("Export"):
                adapters = AdapterSerializer.load(args.adapter)
                alpha = AdapterSerializer.read_alpha(args.adapter)
                out = export_peft(adapters, alpha, args.output_dir, base_model_name=args.base_model)
            logger.info(f"PEFT adapter written to: {out}")

        else:
            inspect(Path(args.adapter))

    except (LoRAForgeError, ValueError, FileNotFoundError) as e:
        logger.error(f"Conversion failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
