"""
Staged transfer learning.

    DENSE_HEAD   backbone frozen, train the dense head (class weights applied)
    FINE_TUNE_1  unfreeze the backbone from `first_ft_unfreeze` onward
    FINE_TUNE_2  optional, unfreeze from the earlier `second_ft_unfreeze`

Every stage recompiles the same model with its own optimizer and callbacks,
trains on the infinite feeds, and appends a StageRecord to the RunResult.
"""
from __future__ import annotations

import enum
import logging
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import tensorflow as tf
from tensorflow import keras

from .config import OPTIMIZERS
from .errors import TrainingFailure
from .params import RunConfig, StageConfig

logger = logging.getLogger(__name__)

LOSS = "binary_crossentropy"
METRICS = ["accuracy"]


class Phase(enum.Enum):
    DENSE_HEAD = "dense"
    FINE_TUNE_1 = "first_ft"
    FINE_TUNE_2 = "second_ft"
    DONE = "done"


def next_phase(phase: Phase, config: RunConfig) -> Phase:
    if phase is Phase.DENSE_HEAD:
        return Phase.FINE_TUNE_1
    if phase is Phase.FINE_TUNE_1:
        return Phase.FINE_TUNE_2 if config.do_second_ft else Phase.DONE
    return Phase.DONE


@dataclass(frozen=True)
class StageRecord:
    ordinal: int
    name: str
    unfreeze_from: Optional[str]
    optimizer: str
    learning_rate: float
    trainable_weights: int
    checkpoint_path: str
    log_path: str
    history: dict
    duration_seconds: float
    best_epoch: Optional[int]
    best_val_loss: float
    best_val_accuracy: float

    def summary(self) -> dict:
        out = {k: v for k, v in self.__dict__.items() if k != "history"}
        out["epochs_run"] = len(self.history.get("loss", []))
        return out


@dataclass
class RunResult:
    """Stage records in completion order. Records are only ever appended."""

    stages: list = field(default_factory=list)

    def append(self, record: StageRecord) -> None:
        self.stages.append(record)

    @property
    def trainable_weights(self) -> list[int]:
        return [s.trainable_weights for s in self.stages]


def set_backbone_trainable(backbone, unfreeze_from: Optional[str] = None) -> None:
    """Freeze the whole backbone, or unfreeze `unfreeze_from` and every layer after it."""
    if unfreeze_from is None:
        backbone.trainable = False
        return
    backbone.trainable = True
    trainable = False
    for layer in backbone.layers:
        if layer.name == unfreeze_from:
            trainable = True
        layer.trainable = trainable
    if not trainable:
        raise TrainingFailure(f"Backbone has no layer named {unfreeze_from!r}")


def make_optimizer(name: str, learning_rate: float):
    return getattr(keras.optimizers, OPTIMIZERS[name])(learning_rate=learning_rate)


def make_callbacks(stage: StageConfig, checkpoint_path: Path, log_path: Path, save_best_only: bool) -> list:
    callbacks = [
        keras.callbacks.ModelCheckpoint(
            filepath=str(checkpoint_path),
            monitor="val_loss",
            save_best_only=save_best_only,
        ),
        keras.callbacks.CSVLogger(str(log_path)),
    ]
    if stage.reduce_lr_on_plateau:
        callbacks.append(keras.callbacks.ReduceLROnPlateau())
    return callbacks


def best_validation(history: dict) -> tuple[Optional[int], float, float]:
    """
    (epoch, val_loss, val_accuracy) at the lowest val_loss, ignoring NaN.
    Ties go to the first epoch reaching the minimum.
    """
    losses = history.get("val_loss", [])
    accuracies = history.get("val_accuracy", history.get("val_acc", []))
    best = None
    for epoch, loss in enumerate(losses):
        if loss is None or math.isnan(loss):
            continue
        if best is None or loss < losses[best]:
            best = epoch
    if best is None:
        return None, float("nan"), float("nan")
    accuracy = accuracies[best] if best < len(accuracies) else float("nan")
    return best + 1, float(losses[best]), float(accuracy)


def _history_dict(history) -> dict:
    raw = getattr(history, "history", history) or {}
    return {k: [float(v) for v in values] for k, values in raw.items()}


def run_stage(
    model,
    backbone,
    stage: StageConfig,
    ordinal: int,
    train_flow,
    valid_flow,
    config: RunConfig,
    run_dir: Path,
) -> StageRecord:
    set_backbone_trainable(backbone, stage.unfreeze_from)
    trainable_weights = len(model.trainable_weights)
    logger.info("Stage %d (%s): %d trainable weight tensors", ordinal, stage.label, trainable_weights)

    checkpoint_path = Path(run_dir) / f"model_{stage.label}.keras"
    log_path = Path(run_dir) / f"log_{stage.label}.csv"
    fit_kwargs = dict(
        steps_per_epoch=stage.steps_per_epoch,
        epochs=stage.epochs,
        validation_data=valid_flow,
        validation_steps=stage.validation_steps,
        callbacks=make_callbacks(stage, checkpoint_path, log_path, config.save_best_model_only),
    )
    if stage.apply_class_weights:
        fit_kwargs["class_weight"] = dict(config.class_weights)

    logger.info("Training %s model:", stage.label)
    before = time.time()
    try:
        model.compile(
            optimizer=make_optimizer(stage.optimizer, stage.learning_rate),
            loss=LOSS,
            metrics=METRICS,
        )
        history = model.fit(train_flow, **fit_kwargs)
    except (tf.errors.OpError, ValueError, TypeError, RuntimeError, OSError, MemoryError) as err:
        raise TrainingFailure(f"Stage {stage.label} failed: {err}") from err
    duration = time.time() - before
    logger.info("%s model took %.3f seconds to train.", stage.label, duration)

    history = _history_dict(history)
    best_epoch, best_loss, best_acc = best_validation(history)
    logger.info(
        "Best %s model validation metrics: Loss = %.3f, Accuracy = %.3f (epoch %s)",
        stage.label, best_loss, best_acc, best_epoch,
    )

    return StageRecord(
        ordinal=ordinal,
        name=stage.name,
        unfreeze_from=stage.unfreeze_from,
        optimizer=stage.optimizer,
        learning_rate=stage.learning_rate,
        trainable_weights=trainable_weights,
        checkpoint_path=str(checkpoint_path),
        log_path=str(log_path),
        history=history,
        duration_seconds=duration,
        best_epoch=best_epoch,
        best_val_loss=best_loss,
        best_val_accuracy=best_acc,
    )


def train_stages(
    model,
    backbone,
    train_flow,
    valid_flow,
    config: RunConfig,
    run_dir: Path,
    result: Optional[RunResult] = None,
) -> RunResult:
    """Run DENSE_HEAD → FINE_TUNE_1 → (FINE_TUNE_2) in order on the shared model."""
    result = result if result is not None else RunResult()
    phase = Phase.DENSE_HEAD
    ordinal = 1
    while phase is not Phase.DONE:
        stage = config.stage(phase.value)
        record = run_stage(model, backbone, stage, ordinal, train_flow, valid_flow, config, run_dir)
        result.append(record)
        phase = next_phase(phase, config)
        ordinal += 1
    return result
