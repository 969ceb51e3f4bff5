"""
LoRAForge Dataset Loaders
=========================
Turns common fine-tuning dataset files into lists of TrainingSample.

Supported Formats:
    ┌──────────────┬──────────────────────────────────────────────────────┐
    │ alpaca       │ JSON array of {"instruction", "input", "output"}     │
    │ jsonl        │ one {"prompt", "completion"} object per line         │
    │ csv          │ header with prompt/input + completion/output/response│
    │ conversation │ JSON array of {"conversations": [{"from", "value"}]} │
    │ text         │ plain prose, chunked into completion pairs           │
    └──────────────┴──────────────────────────────────────────────────────┘

Malformed rows are logged and skipped. Only a structurally wrong file (not
a JSON array, CSV without the needed columns) raises.

Usage:
    >>> samples = load_alpaca_dataset("data/alpaca.json")
    >>> samples = filter_by_length(samples, max_tokens=512)
    >>> split = train_validation_split(samples, validation_ratio=0.1, seed=42)
    >>> save_as_jsonl(split["train"], "data/train.jsonl")
"""

from __future__ import annotations

import csv
import json
import logging
import random
import re
from pathlib import Path
from typing import Optional, Union

from loraforge.data.sample import (
    TrainingSample,
    chat_format,
    completion_format,
    instruction_format,
)

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

# Rough character budget per token used by filter_by_length
CHARS_PER_TOKEN = 4

# Text chunks shorter than this are not worth a training sample
MIN_CHUNK_CHARS = 50

PROMPT_COLUMNS = ("prompt", "input")
COMPLETION_COLUMNS = ("completion", "output", "response")


def _load_json_array(path: PathLike, kind: str) -> list:
    with open(path, "r", encoding="utf-8") as f:
        root = json.load(f)
    if not isinstance(root, list):
        raise ValueError(f"{kind} dataset must be a JSON array: {path}")
    return root


def _text(item: dict, key: str) -> str:
    value = item.get(key)
    return "" if value is None else str(value)


# =============================================================================
# Loaders
# =============================================================================

def load_alpaca_dataset(path: PathLike) -> list[TrainingSample]:
    """
    Load an Alpaca-style JSON array.

    Items without an instruction or an output are skipped.
    """
    logger.info(f"Loading Alpaca dataset from {path}")
    samples = []
    for item in _load_json_array(path, "Alpaca"):
        sample = _alpaca_record(item)
        if sample is not None:
            samples.append(sample)

    logger.info(f"Loaded {len(samples)} examples from Alpaca dataset")
    return samples


def _alpaca_record(item) -> Optional[TrainingSample]:
    if not isinstance(item, dict):
        logger.warning("Skipping non-object item in Alpaca dataset")
        return None
    instruction = _text(item, "instruction")
    output = _text(item, "output")
    if not instruction or not output:
        logger.warning("Skipping invalid example: missing instruction or output")
        return None
    return instruction_format(instruction, _text(item, "input"), output)


def _conversation_records(item) -> list[TrainingSample]:
    turns = item.get("conversations") if isinstance(item, dict) else None
    if not isinstance(turns, list) or len(turns) < 2:
        return []

    samples = []
    for human, gpt in zip(turns, turns[1:]):
        if not isinstance(human, dict) or not isinstance(gpt, dict):
            continue
        if human.get("from") != "human" or gpt.get("from") != "gpt":
            continue
        user_message = _text(human, "value")
        response = _text(gpt, "value")
        if user_message and response:
            samples.append(chat_format(None, user_message, response))
    return samples


def load_jsonl_dataset(path: PathLike) -> list[TrainingSample]:
    """Load ``{"prompt", "completion"}`` objects, one per line."""
    logger.info(f"Loading JSONL dataset from {path}")
    samples = []
    with open(path, "r", encoding="utf-8") as f:
        for line_num, line in enumerate(f, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                item = json.loads(line)
            except json.JSONDecodeError as e:
                logger.warning(f"Line {line_num}: failed to parse JSON: {e}")
                continue
            if not isinstance(item, dict):
                logger.warning(f"Line {line_num}: expected a JSON object")
                continue

            prompt = _text(item, "prompt")
            completion = _text(item, "completion")
            if not prompt or not completion:
                logger.warning(f"Line {line_num}: missing prompt or completion")
                continue
            samples.append(completion_format(prompt, completion))

    logger.info(f"Loaded {len(samples)} examples from JSONL dataset")
    return samples


def load_csv_dataset(path: PathLike) -> list[TrainingSample]:
    """
    Load a CSV file with a header row.

    The prompt column is the first header named ``prompt`` or ``input``; the
    completion column is the first named ``completion``, ``output`` or
    ``response`` (case-insensitive). Quoted fields may contain commas.

    Raises
    ------
    ValueError
        If the file is empty or lacks either column.
    """
    logger.info(f"Loading CSV dataset from {path}")
    samples = []
    with open(path, "r", encoding="utf-8", newline="") as f:
        reader = csv.reader(f)
        header = next(reader, None)
        if header is None:
            raise ValueError(f"CSV file is empty: {path}")

        columns = [h.strip().lower() for h in header]
        prompt_col = next((i for i, h in enumerate(columns) if h in PROMPT_COLUMNS), None)
        completion_col = next(
            (i for i, h in enumerate(columns) if h in COMPLETION_COLUMNS), None
        )
        if prompt_col is None or completion_col is None:
            raise ValueError(
                f"CSV must have 'prompt' and 'completion' columns, got {header}"
            )

        needed = max(prompt_col, completion_col)
        for row in reader:
            if len(row) <= needed:
                logger.warning(f"Line {reader.line_num}: insufficient columns")
                continue
            prompt = row[prompt_col].strip()
            completion = row[completion_col].strip()
            if prompt and completion:
                samples.append(completion_format(prompt, completion))

    logger.info(f"Loaded {len(samples)} examples from CSV dataset")
    return samples


def load_conversation_dataset(path: PathLike) -> list[TrainingSample]:
    """
    Load ShareGPT-style conversations.

    Every adjacent ``human`` → ``gpt`` turn pair becomes one ChatML sample
    with the default system prompt.
    """
    logger.info(f"Loading conversation dataset from {path}")
    samples = []
    for item in _load_json_array(path, "Conversation"):
        samples.extend(_conversation_records(item))

    logger.info(f"Loaded {len(samples)} examples from conversation dataset")
    return samples


def load_hub_dataset(
    name: str,
    format: str = "alpaca",
    split: str = "train",
    subset: Optional[str] = None,
    limit: Optional[int] = None,
) -> list[TrainingSample]:
    """
    Download a dataset from the Hugging Face Hub and convert its rows.

    Parameters
    ----------
    name : str
        Hub dataset id, e.g. ``"tatsu-lab/alpaca"``.
    format : str
        Row layout: ``alpaca`` (instruction/input/output), ``jsonl``
        (prompt/completion) or ``conversation`` (ShareGPT turns).
    split : str
        Dataset split to read.
    subset : str or None
        Dataset configuration name, if the dataset has several.
    limit : int or None
        Convert at most this many rows.
    """
    if format not in ("alpaca", "jsonl", "conversation"):
        raise ValueError(
            f"Hub rows cannot be read as '{format}'. "
            f"Choose from: alpaca, jsonl, conversation"
        )

    from datasets import load_dataset as hf_load_dataset

    logger.info(f"Downloading {name} ({split}) from the Hugging Face Hub...")
    rows = hf_load_dataset(name, subset, split=split)
    if limit is not None:
        rows = rows.select(range(min(limit, len(rows))))

    samples = []
    for row in rows:
        if format == "alpaca":
            sample = _alpaca_record(row)
            if sample is not None:
                samples.append(sample)
        elif format == "conversation":
            samples.extend(_conversation_records(row))
        else:
            prompt, completion = _text(row, "prompt"), _text(row, "completion")
            if prompt and completion:
                samples.append(completion_format(prompt, completion))

    logger.info(f"Loaded {len(samples)} examples from {name}")
    return samples


def _split_chunk(text: str) -> TrainingSample:
    # first two thirds condition, last third is scored
    split_point = len(text) * 2 // 3
    return completion_format(text[:split_point], text[split_point:])


def load_text_dataset(
    path: PathLike,
    chunk_size: int = 512,
    overlap: int = 0,
) -> list[TrainingSample]:
    """
    Chunk a plain-text file into completion samples.

    Sentences are packed into chunks of at most ``chunk_size`` characters.
    Each chunk longer than 50 characters becomes one sample whose first two
    thirds are the input and last third the target. The last ``overlap``
    characters of a chunk are carried into the next one.
    """
    if chunk_size <= 0:
        raise ValueError(f"chunk_size must be positive, got {chunk_size}")
    if overlap < 0:
        raise ValueError(f"overlap must be >= 0, got {overlap}")

    logger.info(f"Loading text dataset from {path}")
    content = Path(path).read_text(encoding="utf-8")

    samples = []
    chunk = ""
    for sentence in re.split(r"[.!?]+", content):
        sentence = sentence.strip()
        if not sentence:
            continue

        if chunk and len(chunk) + len(sentence) > chunk_size:
            text = chunk.strip()
            if len(text) > MIN_CHUNK_CHARS:
                samples.append(_split_chunk(text))
            chunk = text[-overlap:] if 0 < overlap < len(chunk) else ""

        chunk += sentence + ". "

    if len(chunk) > MIN_CHUNK_CHARS:
        samples.append(_split_chunk(chunk.strip()))

    logger.info(f"Created {len(samples)} examples from text dataset")
    return samples


# =============================================================================
# Transforms
# =============================================================================

def filter_by_length(
    samples: list[TrainingSample],
    max_tokens: int,
) -> list[TrainingSample]:
    """Keep samples whose full text fits ``max_tokens`` at ~4 chars/token."""
    max_chars = max_tokens * CHARS_PER_TOKEN
    kept = [s for s in samples if len(s.full_text) <= max_chars]
    logger.info(
        f"Filtered dataset: {len(kept)}/{len(samples)} examples within "
        f"{max_tokens} token limit"
    )
    return kept


def train_validation_split(
    samples: list[TrainingSample],
    validation_ratio: float = 0.1,
    seed: Optional[int] = None,
) -> dict[str, list[TrainingSample]]:
    """
    Shuffle a copy of ``samples`` and split it.

    Returns
    -------
    dict
        ``{"train": [...], "validation": [...]}``; the training share is
        ``int(len(samples) * (1 - validation_ratio))``.
    """
    if not 0.0 <= validation_ratio <= 1.0:
        raise ValueError(
            f"validation_ratio must be in [0, 1], got {validation_ratio}"
        )

    shuffled = list(samples)
    random.Random(seed).shuffle(shuffled)
    split_index = int(len(shuffled) * (1 - validation_ratio))

    split = {
        "train": shuffled[:split_index],
        "validation": shuffled[split_index:],
    }
    logger.info(
        f"Dataset split: {len(split['train'])} train, "
        f"{len(split['validation'])} validation"
    )
    return split


def save_as_jsonl(samples: list[TrainingSample], path: PathLike) -> None:
    """Write samples as ``{"prompt", "completion"[, "instruction"]}`` lines."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for sample in samples:
            record = {"prompt": sample.input, "completion": sample.target}
            if sample.instruction is not None:
                record["instruction"] = sample.instruction
            f.write(json.dumps(record, ensure_ascii=False) + "\n")
    logger.info(f"Saved {len(samples)} examples to {path}")


LOADERS = {
    "alpaca": load_alpaca_dataset,
    "jsonl": load_jsonl_dataset,
    "csv": load_csv_dataset,
    "conversation": load_conversation_dataset,
    "text": load_text_dataset,
}


def load_dataset(path: PathLike, format: str) -> list[TrainingSample]:
    """Dispatch to the loader registered for ``format``."""
    if format not in LOADERS:
        raise ValueError(
            f"Unknown dataset format '{format}'. "
            f"Choose from: {', '.join(LOADERS)}"
        )
    return LOADERS[format](path)
