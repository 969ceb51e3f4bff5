"""
LoRAForge Trainer
=================
The training loop: drives epochs and batches over TrainingSamples, scores
the masked target span against a frozen base model, pushes the loss
gradient into every adapter module, steps the optimizer once per batch,
and writes checkpoints.

What This Handles:
    - Shuffling (fresh seeded permutation every epoch, caller's list untouched)
    - Masked-span cross-entropy and its gradient
    - Manual backward into every AdapterModule
    - One Adam step per batch
    - Checkpointing (interim, best, periodic, final)
    - Cooperative stop at batch and epoch boundaries
    - Logging (loss, perplexity, throughput)

Checkpoints (in ``output_dir``):
    checkpoint-step-<N>.gguf      every ``save_steps`` optimizer steps
    best_adapter_epoch_<E>.gguf   whenever the epoch loss sets a new best
    checkpoint_epoch_<E>.gguf     every max(1, epochs // 5) epochs
    final_adapter.gguf            always, after the last epoch

    Checkpoints are best-effort: a failed write is logged and training goes
    on with the in-memory weights untouched.

Analogy:
    The base model is a seasoned musician who plays every note exactly as
    written. The adapters are a small set of earpiece hints. For each note
    of the target passage, the trainer compares what the musician (plus
    hints) played against the score, and nudges the hints. The musician
    never changes.

Usage:
    >>> trainer = LoRATrainer(base_model, config, layer_count=32, model_dim=4096)
    >>> results = trainer.train(samples)
    >>> results["best_loss"], results["checkpoints"][-1]
"""

from __future__ import annotations

import logging
import math
import random
import time
from pathlib import Path
from typing import Optional, Sequence, Union

import torch
from tqdm import tqdm

from loraforge.adapter.adapter_set import AdapterSet
from loraforge.adapter.serializer import AdapterSerializer
from loraforge.config import LoRAForgeConfig
from loraforge.data.sample import TrainingSample
from loraforge.errors import PersistenceError
from loraforge.model.base import ActivationProvider, BaseModel, GaussianActivationProvider
from loraforge.training.metrics import cross_entropy_with_grad, perplexity

logger = logging.getLogger(__name__)

FINAL_ADAPTER_NAME = "final_adapter.gguf"


class LoRATrainer:
    """
    Trains an AdapterSet against a frozen base model.

    Parameters
    ----------
    base_model : BaseModel
        Anything with ``encode(text)`` and ``logits_at(tokens, position)``.

    config : LoRAForgeConfig
        Adapter and training settings. Validated on construction.

    layer_count : int
        Number of layers of the base model.

    model_dim : int
        Hidden size of the base model.

    activation_provider : ActivationProvider or None
        Source of the per-layer projection inputs. Defaults to the base
        model when it implements ``input_activation``; otherwise random
        placeholder activations are used and a warning is logged.

    projection_dims : mapping or None
        ``projection → (input_dim, output_dim)`` of the base model, checked
        against the adapter shapes before any module is built.

    Raises
    ------
    ConfigurationError
        On invalid configuration or a dimension mismatch.
    """

    def __init__(
        self,
        base_model: BaseModel,
        config: LoRAForgeConfig,
        layer_count: int,
        model_dim: int,
        activation_provider: Optional[ActivationProvider] = None,
        projection_dims: Optional[dict[str, tuple[int, int]]] = None,
    ):
        config.validate()
        self.base_model = base_model
        self.config = config
        self.layer_count = layer_count
        self.model_dim = model_dim

        seed = config.training.seed
        self.activation_provider = self._resolve_provider(
            base_model, activation_provider, model_dim, seed
        )

        self.adapters = AdapterSet.build(
            layer_count=layer_count,
            model_dim=model_dim,
            target_modules=config.adapter.target_modules,
            rank=config.adapter.rank,
            seed=seed,
            projection_dims=projection_dims,
        )

        # Separate random streams for shuffling and dropout masks
        self._rng = random.Random(seed)
        self._dropout_generator = torch.Generator()
        if seed is not None:
            self._dropout_generator.manual_seed(seed + 1)
        else:
            self._dropout_generator.seed()

        self.global_step = 0
        self.best_loss = float("inf")
        self.checkpoints: list[Path] = []
        self._stop_requested = False

        logger.info(
            f"Trainer initialized: {len(self.adapters)} modules, "
            f"{self.adapters.n_params / 1e6:.2f}M trainable parameters, "
            f"activations from {type(self.activation_provider).__name__}"
        )

    @staticmethod
    def _resolve_provider(
        base_model: BaseModel,
        activation_provider: Optional[ActivationProvider],
        model_dim: int,
        seed: Optional[int],
    ) -> ActivationProvider:
        if activation_provider is not None:
            return activation_provider
        if isinstance(base_model, ActivationProvider):
            return base_model

        logger.warning(
            "Base model exposes no input activations and no activation "
            "provider was given. Using random placeholder activations: "
            "training will run but the gradients are not meaningful."
        )
        return GaussianActivationProvider(model_dim, seed=seed)

    # ─── Public API ─────────────────────────────────────────────────────

    def train(self, samples: Sequence[TrainingSample]) -> dict:
        """
        Run the full training loop.

        Parameters
        ----------
        samples : sequence of TrainingSample
            Training data. Never modified.

        Returns
        -------
        dict
            - epoch_losses: mean batch loss of every completed epoch
            - best_loss: lowest epoch loss (inf if no epoch completed)
            - global_step: optimizer steps taken
            - checkpoints: paths of every checkpoint written
            - total_time_seconds: wall-clock time
            - stopped_early: True when request_stop() ended the run

        Raises
        ------
        ValueError
            If ``samples`` is empty.
        """
        if not samples:
            raise ValueError("Cannot train on an empty sample list.")

        tc = self.config.training
        ac = self.config.adapter
        output_dir = Path(tc.output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        logger.info(
            f"Starting LoRA training: {len(samples)} samples, "
            f"{tc.epochs} epochs, batch_size={tc.batch_size}, "
            f"lr={tc.learning_rate:.2e}"
        )
        logger.info(
            f"LoRA config: rank={ac.rank}, alpha={ac.alpha:.2f}, "
            f"dropout={ac.dropout:.2f}"
        )

        start_time = time.time()
        results = {
            "epoch_losses": [],
            "best_loss": float("inf"),
            "global_step": 0,
            "checkpoints": [],
            "total_time_seconds": 0.0,
            "stopped_early": False,
        }
        periodic_every = max(1, tc.epochs // 5)

        for epoch in range(tc.epochs):
            if self._stop_requested:
                results["stopped_early"] = True
                break

            epoch_start = time.time()
            logger.info(f"=== Training epoch {epoch + 1}/{tc.epochs} ===")
            epoch_loss = self._train_epoch(samples, epoch)

            if self._stop_requested:
                # a partial epoch is not comparable with full ones
                logger.info(
                    f"Stop requested during epoch {epoch + 1}; "
                    f"skipping epoch checkpoints"
                )
                results["stopped_early"] = True
                break

            results["epoch_losses"].append(epoch_loss)
            logger.info(
                f"Epoch {epoch + 1} completed: loss={epoch_loss:.6f}, "
                f"ppl={perplexity(min(epoch_loss, 20)):.2f}, "
                f"time={time.time() - epoch_start:.1f}s"
            )

            if epoch_loss < self.best_loss:
                self.best_loss = epoch_loss
                self._save_checkpoint(f"best_adapter_epoch_{epoch + 1}.gguf")
                logger.info(f"New best loss: {epoch_loss:.6f}")

            if (epoch + 1) % periodic_every == 0:
                self._save_checkpoint(f"checkpoint_epoch_{epoch + 1}.gguf")

        self._save_checkpoint(FINAL_ADAPTER_NAME)

        total_time = time.time() - start_time
        results["best_loss"] = self.best_loss
        results["global_step"] = self.global_step
        results["checkpoints"] = list(self.checkpoints)
        results["total_time_seconds"] = total_time

        logger.info(
            f"Training complete in {total_time:.1f}s: best_loss="
            f"{self.best_loss:.6f}, steps={self.global_step}"
            + (", stopped early" if results["stopped_early"] else "")
        )
        if self.global_step:
            logger.info(
                f"Average time per step: {total_time * 1000 / self.global_step:.2f} ms"
            )
        return results

    def evaluate(self, samples: Sequence[TrainingSample]) -> dict:
        """
        Masked-span loss of ``samples`` with the current adapters, without
        dropout and without touching any gradient.

        Returns
        -------
        dict
            ``loss`` (mean over all scored positions), ``perplexity`` and
            ``positions`` (number of scored positions). Loss and perplexity
            are NaN when no position is scored.
        """
        total_loss = 0.0
        total_positions = 0
        for sample in samples:
            loss_sum, count = self._score_sample(sample, training=False)
            total_loss += loss_sum
            total_positions += count

        if total_positions == 0:
            logger.warning("No scored positions in evaluation samples.")
            return {"loss": float("nan"), "perplexity": float("nan"), "positions": 0}

        mean_loss = total_loss / total_positions
        ppl = perplexity(mean_loss)
        logger.info(
            f"Evaluation: loss={mean_loss:.4f}, ppl={ppl:.2f} "
            f"({total_positions:,} positions)"
        )
        return {"loss": mean_loss, "perplexity": ppl, "positions": total_positions}

    def save_adapter(self, path: Union[str, Path]) -> Path:
        """
        Write the current adapters to ``path``.

        Raises
        ------
        PersistenceError
            If the file cannot be written.
        """
        return AdapterSerializer.save(
            self.adapters,
            alpha=self.config.adapter.alpha,
            path=path,
            architecture=self.config.training.architecture,
        )

    def request_stop(self) -> None:
        """Ask the loop to finish at the next batch or epoch boundary."""
        logger.info("Stop requested")
        self._stop_requested = True

    # ─── Epoch / batch ──────────────────────────────────────────────────

    def _train_epoch(self, samples: Sequence[TrainingSample], epoch: int) -> float:
        """
        Run one epoch and return the mean of its batch losses.
        """
        tc = self.config.training
        shuffled = list(samples)
        self._rng.shuffle(shuffled)

        batches = [
            shuffled[i:i + tc.batch_size]
            for i in range(0, len(shuffled), tc.batch_size)
        ]
        total_loss = 0.0
        n_batches = 0

        progress = tqdm(
            batches,
            desc=f"Epoch {epoch + 1}/{tc.epochs}",
            unit="batch",
            disable=not tc.progress_bar,
        )
        for batch in progress:
            if self._stop_requested:
                break

            batch_loss = self._train_batch(batch)
            total_loss += batch_loss
            n_batches += 1
            progress.set_postfix(loss=f"{batch_loss:.4f}")

            if tc.log_every > 0 and self.global_step % tc.log_every == 0:
                logger.info(f"Step {self.global_step}: loss {batch_loss:.6f}")

            if self.global_step % tc.save_steps == 0:
                self._save_checkpoint(f"checkpoint-step-{self.global_step}.gguf")
        progress.close()

        return total_loss / n_batches if n_batches else 0.0

    def _train_batch(self, batch: Sequence[TrainingSample]) -> float:
        """
        Accumulate gradients over ``batch``, take one optimizer step, and
        return the weighted mean loss of the samples that were scored.
        """
        tc = self.config.training
        weighted_loss = 0.0
        total_weight = 0.0

        for sample in batch:
            loss_sum, count = self._score_sample(sample, training=True)
            if count == 0:
                continue
            weighted_loss += sample.weight * (loss_sum / count)
            total_weight += sample.weight

        self.adapters.update(
            tc.learning_rate, tc.beta1, tc.beta2, tc.epsilon,
            step=self.global_step + 1,
        )
        self.global_step += 1

        return weighted_loss / total_weight if total_weight > 0 else 0.0

    # ─── Scoring ────────────────────────────────────────────────────────

    def _tokenize(self, sample: TrainingSample) -> tuple[list[int], int]:
        max_len = self.config.adapter.max_sequence_length
        tokens = list(self.base_model.encode(sample.full_text))[:max_len]
        input_len = len(self.base_model.encode(sample.input))
        return tokens, input_len

    def _activations(self, tokens: list[int], position: int) -> dict[str, torch.Tensor]:
        return {
            name: self.activation_provider.input_activation(
                module.layer, module.projection, tokens, position
            )
            for name, module in self.adapters.items()
        }

    def _score_sample(self, sample: TrainingSample, training: bool) -> tuple[float, int]:
        """
        Score the target span of one sample.

        In training mode the gradient of every scored position (scaled by
        the sample weight) is accumulated into the adapters.

        Returns
        -------
        (float, int)
            Sum of position losses and the number of scored positions.
        """
        tokens, input_len = self._tokenize(sample)
        if len(tokens) < 2 or input_len >= len(tokens) - 1:
            return 0.0, 0

        ac = self.config.adapter
        loss_sum = 0.0
        count = 0

        for position in range(input_len, len(tokens) - 1):
            target = tokens[position + 1]
            base_logits = torch.as_tensor(
                self.base_model.logits_at(tokens, position), dtype=torch.float32
            )
            activations = self._activations(tokens, position)

            trace: Optional[dict[str, torch.Tensor]] = {} if training else None
            logits = self.adapters.apply_to_logits(
                base_logits,
                activations,
                ac.alpha,
                training=training,
                dropout_rate=ac.dropout,
                generator=self._dropout_generator,
                trace=trace,
            )
            loss, grad = cross_entropy_with_grad(logits, target)
            loss_sum += loss
            count += 1

            if training and sample.weight > 0:
                self.adapters.backward(grad * sample.weight, trace, ac.alpha)

        return loss_sum, count

    # ─── Checkpointing ──────────────────────────────────────────────────

    def _save_checkpoint(self, filename: str) -> Optional[Path]:
        path = Path(self.config.training.output_dir) / filename
        try:
            self.save_adapter(path)
        except PersistenceError as e:
            logger.error(f"Checkpoint {path} not written, continuing training: {e}")
            return None

        self.checkpoints.append(path)
        logger.info(f"Checkpoint saved: {path}")
        return path

    def __repr__(self) -> str:
        return (
            f"LoRATrainer(modules={len(self.adapters)}, "
            f"step={self.global_step}, best_loss={self.best_loss:.4f})"
        )
