"""
LoRAForge Training Samples
==========================
The immutable record the trainer consumes, plus the prompt formats used to
build one.

A sample is split into two parts:

    ┌──────────── input ────────────┐┌──────── target ────────┐
    "### Instruction:\nAdd 2+2\n..." "4"
     (conditioning, never scored)     (scored: masked span)

Only the target tokens contribute to the loss. Formats are plain functions
returning a TrainingSample, so the trainer never needs to know which one
produced a sample.

Usage:
    >>> sample = instruction_format("Translate to French", "Hello", "Bonjour")
    >>> sample.full_text
    'Below is an instruction ...### Response:\\nBonjour'
    >>> chat_format(None, "Hi", "Hello!").target
    'Hello!<|im_end|>'
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Optional

DEFAULT_SYSTEM_PROMPT = "You are a helpful assistant."

START_OF_TEXT = "<|startoftext|>"
START_OF_TARGET = "<|startoftarget|>"
END_OF_TEXT = "<|endoftext|>"

IM_START = "<|im_start|>"
IM_END = "<|im_end|>"

ALPACA_TEMPLATE = (
    "Below is an instruction that describes a task, paired with an input "
    "that provides further context. Write a response that appropriately "
    "completes the request.\n\n"
    "### Instruction:\n{instruction}\n\n"
    "### Input:\n{input}\n\n"
    "### Response:\n"
)

CHATML_TEMPLATE = (
    IM_START + "system\n{system}" + IM_END + "\n"
    + IM_START + "user\n{user}" + IM_END + "\n"
    + IM_START + "assistant\n"
)


@dataclass(frozen=True)
class TrainingSample:
    """
    One training example.

    Parameters
    ----------
    input : str
        Conditioning text. Its tokens are never scored.
    target : str
        Text the adapter should learn to produce after ``input``.
    instruction : str or None
        The raw instruction, kept for bookkeeping by instruction-style
        formats.
    weight : float
        Relative weight of this sample in the batch loss and gradient.
    """
    input: str
    target: str
    instruction: Optional[str] = None
    weight: float = 1.0

    def __post_init__(self):
        if not math.isfinite(self.weight) or self.weight < 0:
            raise ValueError(
                f"Sample weight must be a finite non-negative number, "
                f"got {self.weight}"
            )

    @property
    def full_text(self) -> str:
        return self.input + self.target

    @property
    def formatted_for_training(self) -> str:
        return START_OF_TEXT + self.input + START_OF_TARGET + self.target + END_OF_TEXT

    def __repr__(self) -> str:
        def _clip(text: str) -> str:
            return text[:50] + "..." if len(text) > 50 else text

        return (
            f"TrainingSample(input={_clip(self.input)!r}, "
            f"target={_clip(self.target)!r}, weight={self.weight})"
        )


# =============================================================================
# Formats
# =============================================================================

def instruction_format(
    instruction: str,
    input: str = "",
    response: str = "",
) -> TrainingSample:
    """Alpaca-style instruction prompt; ``response`` is the scored target."""
    prompt = ALPACA_TEMPLATE.format(instruction=instruction, input=input)
    return TrainingSample(input=prompt, target=response, instruction=instruction)


def chat_format(
    system_prompt: Optional[str],
    user_message: str,
    assistant_response: str,
) -> TrainingSample:
    """
    ChatML prompt with one user turn. The assistant response is the target,
    terminated with ``<|im_end|>`` so the adapter learns to stop.
    """
    prompt = CHATML_TEMPLATE.format(
        system=system_prompt if system_prompt is not None else DEFAULT_SYSTEM_PROMPT,
        user=user_message,
    )
    return TrainingSample(input=prompt, target=assistant_response + IM_END)


def completion_format(prompt: str, completion: str) -> TrainingSample:
    """Plain prompt/completion pair, used verbatim."""
    return TrainingSample(input=prompt, target=completion)
