"""
Run parameters: validate the flat parameter mapping into an immutable RunConfig.

All checks run before anything touches the filesystem, so a bad parameter set
aborts the run without leaving directories behind.
"""
from __future__ import annotations

import json
import numbers
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping, Optional

from .config import BACKBONES, DEFAULT_PARAMS, OPTIMIZERS, STAGE_PREFIXES
from .errors import ConfigValidationError, RunEnvironmentError

STAGE_FIELDS = ("optimizer", "lr", "steps_per_epoch", "epochs", "validation_steps")
NUMERIC_SUFFIXES = ("lr", "steps_per_epoch", "epochs", "validation_steps")
COUNT_SUFFIXES = ("steps_per_epoch", "epochs", "validation_steps")

STAGE_LABELS = {
    "dense": "train-dense",
    "first_ft": "fine-tune-1",
    "second_ft": "fine-tune-2",
}


@dataclass(frozen=True)
class DenseLayer:
    units: int
    dropout: float


@dataclass(frozen=True)
class StageConfig:
    """One training stage: what to unfreeze and how to optimize it."""

    name: str
    optimizer: str
    learning_rate: float
    steps_per_epoch: int
    epochs: int
    validation_steps: int
    unfreeze_from: Optional[str] = None
    apply_class_weights: bool = False
    reduce_lr_on_plateau: bool = True

    @property
    def label(self) -> str:
        return STAGE_LABELS[self.name]


@dataclass(frozen=True)
class RunConfig:
    img_base_dir: str
    img_dir: str
    output_dir: str
    img_size: tuple[int, int]
    batch_size: int
    img_horizontal_flip: bool
    img_vertical_flip: bool
    positive_class: str
    negative_class: str
    base_model: str
    save_best_model_only: bool
    dense_structure: tuple[DenseLayer, ...]
    add_small_final_layer: bool
    small_layer_size: Optional[int]
    class_weights: Mapping[int, float]
    stages: tuple[StageConfig, ...]

    @property
    def do_second_ft(self) -> bool:
        return len(self.stages) == 3

    def stage(self, name: str) -> StageConfig:
        for stage in self.stages:
            if stage.name == name:
                return stage
        raise KeyError(name)

    def to_raw(self) -> dict:
        """Flat parameter mapping that build_config turns back into this config."""
        raw = {
            "img_base_dir": self.img_base_dir,
            "img_dir": self.img_dir,
            "output_dir": self.output_dir,
            "img_size": list(self.img_size),
            "img_horizontal_flip": self.img_horizontal_flip,
            "img_vertical_flip": self.img_vertical_flip,
            "batch_size": self.batch_size,
            "positive_class": self.positive_class,
            "negative_class": self.negative_class,
            "base_model": self.base_model,
            "save_best_model_only": self.save_best_model_only,
            "add_small_final_layer": self.add_small_final_layer,
            "small_layer_size": self.small_layer_size,
            "dense_structure": [
                {"units": layer.units, "dropout": layer.dropout}
                for layer in self.dense_structure
            ],
            "do_second_ft": self.do_second_ft,
            "class_weights": {str(k): v for k, v in self.class_weights.items()},
        }
        for stage in self.stages:
            prefix = stage.name
            raw[f"{prefix}_optimizer"] = stage.optimizer
            raw[f"{prefix}_lr"] = stage.learning_rate
            raw[f"{prefix}_steps_per_epoch"] = stage.steps_per_epoch
            raw[f"{prefix}_epochs"] = stage.epochs
            raw[f"{prefix}_validation_steps"] = stage.validation_steps
            if stage.unfreeze_from is not None:
                raw[f"{prefix}_unfreeze"] = stage.unfreeze_from
        return raw


def _is_scalar_number(value: Any) -> bool:
    return isinstance(value, numbers.Real) and not isinstance(value, bool)


def _is_missing(value: Any) -> bool:
    return value is None


def _stage_keys(prefix: str) -> list[str]:
    keys = [f"{prefix}_{field}" for field in STAGE_FIELDS]
    if prefix != "dense":
        keys.append(f"{prefix}_unfreeze")
    return keys


def _check_required(params: Mapping[str, Any]) -> None:
    if params.get("do_second_ft"):
        missing = [k for k in _stage_keys("second_ft") if _is_missing(params.get(k))]
        if missing:
            raise ConfigValidationError(
                "If `do_second_ft` is True, all `second_ft_*` arguments are required "
                f"(missing: {', '.join(missing)})"
            )

    if params.get("add_small_final_layer") and _is_missing(params.get("small_layer_size")):
        raise ConfigValidationError(
            "If `add_small_final_layer` is True, `small_layer_size` argument is required."
        )

    for key in _stage_keys("dense") + _stage_keys("first_ft"):
        if _is_missing(params.get(key)):
            raise ConfigValidationError(f"`{key}` argument is required")


def _check_paths(params: Mapping[str, Any]) -> None:
    base = Path(params["img_base_dir"])
    if not base.is_dir():
        raise RunEnvironmentError(f"`img_base_dir` does not exist: {base}")
    if not (base / params["img_dir"]).is_dir():
        raise RunEnvironmentError(f"`img_dir` does not exist: {base / params['img_dir']}")
    if not Path(params["output_dir"]).is_dir():
        raise RunEnvironmentError(f"`output_dir` does not exist: {params['output_dir']}")


def _check_image_params(params: Mapping[str, Any]) -> None:
    img_size = params.get("img_size")
    if (
        isinstance(img_size, (str, bytes))
        or not hasattr(img_size, "__len__")
        or len(img_size) != 2
        or not all(_is_scalar_number(v) for v in img_size)
    ):
        raise ConfigValidationError("`img_size` must be a numeric sequence of length 2")

    if not _is_scalar_number(params.get("batch_size")):
        raise ConfigValidationError("Image flow parameter `batch_size` must be a single numeric value")


def _check_choices(params: Mapping[str, Any]) -> None:
    if params.get("base_model") not in BACKBONES:
        raise ConfigValidationError(
            f"Base model choice {params.get('base_model')!r} not available "
            f"(choose from: {', '.join(sorted(BACKBONES))})"
        )

    stage_titles = {
        "dense": "Dense",
        "first_ft": "First fine-tune",
        "second_ft": "Second fine-tune",
    }
    for prefix in STAGE_PREFIXES:
        name = params.get(f"{prefix}_optimizer")
        if prefix == "second_ft" and name is None and not params.get("do_second_ft"):
            continue
        if name not in OPTIMIZERS:
            raise ConfigValidationError(
                f"{stage_titles[prefix]} optimizer choice {name!r} not available "
                f"(choose from: {', '.join(sorted(OPTIMIZERS))})"
            )


def _check_stage_numbers(params: Mapping[str, Any]) -> None:
    bad = []
    for key, value in params.items():
        if not key.startswith(STAGE_PREFIXES) or not key.endswith(NUMERIC_SUFFIXES):
            continue
        if value is None and key.startswith("second_ft") and not params.get("do_second_ft"):
            continue
        if not _is_scalar_number(value):
            bad.append(key)
        elif key.endswith(COUNT_SUFFIXES) and (not float(value).is_integer() or value < 1):
            raise ConfigValidationError(f"`{key}` must be a positive whole number")
    if bad:
        raise ConfigValidationError(
            "All arguments *_lr, *_steps_per_epoch, *_epochs, *_validation_steps "
            f"must be single numeric values (offending: {', '.join(sorted(bad))})"
        )


def _dense_structure(raw_layers: Any) -> tuple[DenseLayer, ...]:
    if not isinstance(raw_layers, (list, tuple)):
        raise ConfigValidationError("`dense_structure` must be a list of {units, dropout} entries")
    layers = []
    for i, entry in enumerate(raw_layers):
        if not isinstance(entry, Mapping) or "units" not in entry or "dropout" not in entry:
            raise ConfigValidationError(f"`dense_structure[{i}]` needs `units` and `dropout`")
        units, dropout = entry["units"], entry["dropout"]
        if not _is_scalar_number(units) or not float(units).is_integer() or units < 1:
            raise ConfigValidationError(f"`dense_structure[{i}].units` must be a positive integer")
        if not _is_scalar_number(dropout) or not 0 <= dropout < 1:
            raise ConfigValidationError(f"`dense_structure[{i}].dropout` must be in [0, 1)")
        layers.append(DenseLayer(units=int(units), dropout=float(dropout)))
    return tuple(layers)


def _class_weights(raw_weights: Any) -> Mapping[int, float]:
    if not isinstance(raw_weights, Mapping):
        raise ConfigValidationError("`class_weights` must map class labels to weights")
    weights = {}
    for label, weight in raw_weights.items():
        try:
            label = int(label)
        except (TypeError, ValueError):
            raise ConfigValidationError(f"`class_weights` label {label!r} is not 0 or 1") from None
        if label not in (0, 1) or not _is_scalar_number(weight):
            raise ConfigValidationError("`class_weights` must map labels 0 and 1 to numbers")
        weights[label] = float(weight)
    return MappingProxyType(weights)


def _stage(params: Mapping[str, Any], prefix: str) -> StageConfig:
    is_dense = prefix == "dense"
    return StageConfig(
        name=prefix,
        optimizer=params[f"{prefix}_optimizer"],
        learning_rate=float(params[f"{prefix}_lr"]),
        steps_per_epoch=int(params[f"{prefix}_steps_per_epoch"]),
        epochs=int(params[f"{prefix}_epochs"]),
        validation_steps=int(params[f"{prefix}_validation_steps"]),
        unfreeze_from=None if is_dense else str(params[f"{prefix}_unfreeze"]),
        # Only the dense head trains with class weights.
        apply_class_weights=is_dense,
        reduce_lr_on_plateau=not is_dense,
    )


def build_config(raw: Mapping[str, Any], check_paths: bool = True) -> RunConfig:
    """
    Validate a flat parameter mapping and return the frozen RunConfig.

    Keys missing from `raw` fall back to DEFAULT_PARAMS. Raises
    ConfigValidationError for bad parameters and RunEnvironmentError when
    the input/output directories are absent (skipped if check_paths is False).
    """
    unknown = sorted(set(raw) - set(DEFAULT_PARAMS))
    if unknown:
        raise ConfigValidationError(f"Unknown parameters: {', '.join(unknown)}")
    params = {**DEFAULT_PARAMS, **raw}

    _check_required(params)
    if check_paths:
        _check_paths(params)
    _check_image_params(params)
    _check_choices(params)
    _check_stage_numbers(params)

    small_layer_size = params.get("small_layer_size")
    if params["add_small_final_layer"]:
        if (
            not _is_scalar_number(small_layer_size)
            or not float(small_layer_size).is_integer()
            or small_layer_size < 1
        ):
            raise ConfigValidationError("`small_layer_size` must be a positive integer")
        small_layer_size = int(small_layer_size)

    if params["positive_class"] == params["negative_class"]:
        raise ConfigValidationError("`positive_class` and `negative_class` must differ")

    prefixes = STAGE_PREFIXES if params.get("do_second_ft") else STAGE_PREFIXES[:2]
    return RunConfig(
        img_base_dir=str(params["img_base_dir"]),
        img_dir=str(params["img_dir"]),
        output_dir=str(params["output_dir"]),
        img_size=(int(params["img_size"][0]), int(params["img_size"][1])),
        batch_size=int(params["batch_size"]),
        img_horizontal_flip=bool(params["img_horizontal_flip"]),
        img_vertical_flip=bool(params["img_vertical_flip"]),
        positive_class=str(params["positive_class"]),
        negative_class=str(params["negative_class"]),
        base_model=params["base_model"],
        save_best_model_only=bool(params["save_best_model_only"]),
        dense_structure=_dense_structure(params["dense_structure"]),
        add_small_final_layer=bool(params["add_small_final_layer"]),
        small_layer_size=small_layer_size if params["add_small_final_layer"] else None,
        class_weights=_class_weights(params["class_weights"]),
        stages=tuple(_stage(params, prefix) for prefix in prefixes),
    )


def save_config(config: RunConfig, path) -> None:
    Path(path).write_text(json.dumps(config.to_raw(), indent=2))


def load_config(path, check_paths: bool = True) -> RunConfig:
    """Rebuild a RunConfig from the JSON saved next to a run's artifacts."""
    return build_config(json.loads(Path(path).read_text()), check_paths=check_paths)
