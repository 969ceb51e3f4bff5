#!/usr/bin/env python3
"""
LoRAForge — Training Script
===========================
Loads a fine-tuning dataset, builds the reference base model over it, and
trains a LoRA adapter, writing GGUF checkpoints to the output directory.

Ctrl+C asks the trainer to stop at the next batch boundary; the final
adapter is still written.

Usage:
    python scripts/train.py --config configs/default.yaml --data data/alpaca.json --format alpaca
    python scripts/train.py --hub-dataset tatsu-lab/alpaca --limit 200
    python scripts/train.py --smoke-test
"""

import argparse
import json
import logging
import signal
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from loraforge.config import LoRAForgeConfig
from loraforge.convert import export_peft
from loraforge.data.loaders import (
    LOADERS,
    filter_by_length,
    load_dataset,
    load_hub_dataset,
    train_validation_split,
)
from loraforge.data.sample import completion_format, instruction_format
from loraforge.data.tokenizer import LoRAForgeTokenizer
from loraforge.model.reference import ReferenceBaseModel
from loraforge.training.metrics import MemoryTracker
from loraforge.training.trainer import LoRATrainer

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    datefmt="%H:%M:%S",
)
logger = logging.getLogger(__name__)


def smoke_samples():
    """A handful of built-in samples for --smoke-test runs without data."""
    return [
        instruction_format("Add the numbers.", "2 and 3", "5"),
        instruction_format("Name the capital.", "France", "Paris"),
        instruction_format("Reverse the word.", "stop", "pots"),
        completion_format("The sky is ", "blue."),
        completion_format("Water freezes at ", "zero degrees Celsius."),
        completion_format("One, two, ", "three, four."),
    ]


def main():
    parser = argparse.ArgumentParser(
        description="LoRAForge Training",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    # Train on a local Alpaca file:
    python scripts/train.py --config configs/default.yaml --data data/alpaca.json

    # Train on a Hub dataset, 200 rows:
    python scripts/train.py --hub-dataset tatsu-lab/alpaca --limit 200

    # Quick smoke test on built-in samples:
    python scripts/train.py --smoke-test
        """,
    )
    parser.add_argument("--config", type=str, default="configs/default.yaml")
    parser.add_argument("--smoke-test", action="store_true")
    parser.add_argument("--data", type=str, default=None, help="Local dataset file")
    parser.add_argument(
        "--format", type=str, default="alpaca", choices=sorted(LOADERS),
        help="Dataset format (default: alpaca)",
    )
    parser.add_argument("--hub-dataset", type=str, default=None, help="Hugging Face Hub dataset id")
    parser.add_argument("--limit", type=int, default=None, help="Use at most N samples")
    parser.add_argument("--validation-ratio", type=float, default=0.1)
    parser.add_argument("--output-dir", type=str, default=None)
    parser.add_argument("--d-model", type=int, default=64, help="Reference model hidden size")
    parser.add_argument("--n-layers", type=int, default=2, help="Reference model layers")
    parser.add_argument("--vocab-size", type=int, default=2048, help="Tokenizer vocabulary size")
    parser.add_argument(
        "--export-peft", action="store_true",
        help="Also export the final adapter in PEFT layout",
    )
    args = parser.parse_args()

    # Load config
    if args.smoke_test:
        config = LoRAForgeConfig.for_smoke_test()
    else:
        config = LoRAForgeConfig.from_yaml(args.config)
    if args.output_dir:
        config.training.output_dir = args.output_dir
    config.validate()
    logger.info(f"\n{config}")

    output_dir = Path(config.training.output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    # ─── Data ───────────────────────────────────────────────────────
    if args.data:
        samples = load_dataset(args.data, args.format)
    elif args.hub_dataset:
        samples = load_hub_dataset(args.hub_dataset, format=args.format, limit=args.limit)
    elif args.smoke_test:
        samples = smoke_samples()
    else:
        parser.error("one of --data, --hub-dataset or --smoke-test is required")

    if args.limit is not None:
        samples = samples[:args.limit]
    samples = filter_by_length(samples, config.adapter.max_sequence_length)
    if not samples:
        logger.error("No usable samples after filtering.")
        sys.exit(1)

    split = train_validation_split(
        samples, args.validation_ratio, seed=config.training.seed
    )
    train_samples = split["train"] or samples

    # ─── Reference base model ───────────────────────────────────────
    tokenizer = LoRAForgeTokenizer(vocab_size=args.vocab_size)
    tokenizer.train([s.full_text for s in samples], min_frequency=1)
    tokenizer.save(output_dir / "tokenizer.json")

    base_model = ReferenceBaseModel(
        tokenizer,
        d_model=args.d_model,
        n_layers=args.n_layers,
        max_seq_len=config.adapter.max_sequence_length,
        seed=config.training.seed or 0,
    )

    # ─── Train ──────────────────────────────────────────────────────
    trainer = LoRATrainer(
        base_model,
        config,
        layer_count=base_model.layer_count,
        model_dim=base_model.model_dim,
        projection_dims=base_model.projection_dims(),
    )
    signal.signal(signal.SIGINT, lambda signum, frame: trainer.request_stop())

    with MemoryTracker("LoRA training") as mem:
        results = trainer.train(train_samples)

    summary = {
        "epoch_losses": results["epoch_losses"],
        "best_loss": results["best_loss"],
        "global_step": results["global_step"],
        "stopped_early": results["stopped_early"],
        "checkpoints": [str(p) for p in results["checkpoints"]],
        "peak_memory_mb": mem.peak_mb,
        "time_seconds": mem.duration_seconds,
    }
    if split["validation"]:
        summary["validation"] = trainer.evaluate(split["validation"])

    if args.export_peft:
        export_peft(trainer.adapters, config.adapter.alpha, output_dir / "peft")

    config.to_yaml(output_dir / "config.yaml")
    with open(output_dir / "training_results.json", "w") as f:
        json.dump(summary, f, indent=2)

    logger.info(
        f"\nTraining complete!"
        f"\n  Best loss: {results['best_loss']:.4f}"
        f"\n  Steps: {results['global_step']}"
        f"\n  Peak memory: {mem.peak_mb:.1f}MB"
        f"\n  Outputs: {output_dir}/"
    )


if __name__ == "__main__":
    main()
