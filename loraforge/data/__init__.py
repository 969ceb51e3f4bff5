"""Training samples, prompt formats, dataset loaders and the BPE tokenizer."""

from loraforge.data.loaders import (
    filter_by_length,
    load_alpaca_dataset,
    load_conversation_dataset,
    load_csv_dataset,
    load_dataset,
    load_hub_dataset,
    load_jsonl_dataset,
    load_text_dataset,
    save_as_jsonl,
    train_validation_split,
)
from loraforge.data.sample import (
    TrainingSample,
    chat_format,
    completion_format,
    instruction_format,
)
from loraforge.data.tokenizer import LoRAForgeTokenizer

__all__ = [
    "TrainingSample",
    "chat_format",
    "completion_format",
    "instruction_format",
    "filter_by_length",
    "load_alpaca_dataset",
    "load_conversation_dataset",
    "load_csv_dataset",
    "load_dataset",
    "load_hub_dataset",
    "load_jsonl_dataset",
    "load_text_dataset",
    "save_as_jsonl",
    "train_validation_split",
    "LoRAForgeTokenizer",
]
