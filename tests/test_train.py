from __future__ import annotations

import math
from pathlib import Path

import pytest

pytest.importorskip("tensorflow")

from tensorflow import keras  # noqa: E402

from towerclf import train as train_module  # noqa: E402
from towerclf.check_setup import split_dirs  # noqa: E402
from towerclf.errors import TrainingFailure  # noqa: E402
from towerclf.model import build_model  # noqa: E402
from towerclf.params import build_config  # noqa: E402
from towerclf.preprocess import make_feeds  # noqa: E402
from towerclf.train import (  # noqa: E402
    Phase,
    RunResult,
    best_validation,
    next_phase,
    run_stage,
    set_backbone_trainable,
    train_stages,
)


class StubLayer:
    def __init__(self, name, n_weights=2):
        self.name = name
        self.trainable = True
        self.weights = [f"{name}/w{i}" for i in range(n_weights)]


class StubBackbone:
    def __init__(self, names):
        self.layers = [StubLayer(n) for n in names]
        self._trainable = True

    @property
    def trainable(self):
        return self._trainable

    @trainable.setter
    def trainable(self, value):
        self._trainable = value
        for layer in self.layers:
            layer.trainable = value


class StubHistory:
    def __init__(self, history):
        self.history = history


class StubModel:
    """Records compile/fit calls; trainable weights follow the backbone flags."""

    def __init__(self, backbone, head_weights=4, val_loss=(0.7, 0.4, 0.4, 0.5)):
        self.backbone = backbone
        self.head_weights = head_weights
        self.val_loss = list(val_loss)
        self.compiled = []
        self.fits = []

    @property
    def trainable_weights(self):
        weights = [f"head/{i}" for i in range(self.head_weights)]
        if self.backbone.trainable:
            for layer in self.backbone.layers:
                if layer.trainable:
                    weights.extend(layer.weights)
        return weights

    def compile(self, **kwargs):
        self.compiled.append(kwargs)

    def fit(self, train_flow, **kwargs):
        self.fits.append(kwargs)
        n = len(self.val_loss)
        return StubHistory({
            "loss": [1.0] * n,
            "accuracy": [0.5] * n,
            "val_loss": list(self.val_loss),
            "val_accuracy": [0.6, 0.8, 0.9, 0.7][:n],
        })


LAYERS = ["input_1", "block1_conv1", "block1_conv2", "block1_pool", "block2_conv1", "block2_conv2"]


@pytest.fixture
def config(raw_params: dict):
    raw_params["do_second_ft"] = True
    return build_config(raw_params, check_paths=False)


def test_phase_transitions(raw_params: dict) -> None:
    two = build_config(raw_params, check_paths=False)
    raw_params["do_second_ft"] = True
    three = build_config(raw_params, check_paths=False)

    assert next_phase(Phase.DENSE_HEAD, two) is Phase.FINE_TUNE_1
    assert next_phase(Phase.FINE_TUNE_1, two) is Phase.DONE
    assert next_phase(Phase.FINE_TUNE_1, three) is Phase.FINE_TUNE_2
    assert next_phase(Phase.FINE_TUNE_2, three) is Phase.DONE


def test_set_backbone_trainable_boundaries() -> None:
    backbone = StubBackbone(LAYERS)
    set_backbone_trainable(backbone, None)
    assert not backbone.trainable
    assert not any(layer.trainable for layer in backbone.layers)

    set_backbone_trainable(backbone, "block2_conv1")
    assert backbone.trainable
    assert [layer.trainable for layer in backbone.layers] == [False, False, False, False, True, True]

    with pytest.raises(TrainingFailure):
        set_backbone_trainable(backbone, "missing_layer")


def test_three_stages_run_in_order(config, tmp_path: Path) -> None:
    backbone = StubBackbone(LAYERS)
    model = StubModel(backbone)

    result = train_stages(model, backbone, "train", "valid", config, tmp_path)

    assert [s.name for s in result.stages] == ["dense", "first_ft", "second_ft"]
    assert [s.ordinal for s in result.stages] == [1, 2, 3]
    assert len(model.compiled) == len(model.fits) == 3
    assert result.trainable_weights == [4, 8, 14]
    assert result.trainable_weights == sorted(result.trainable_weights)


def test_two_stages_without_second_fine_tune(raw_params: dict, tmp_path: Path) -> None:
    config = build_config(raw_params, check_paths=False)
    backbone = StubBackbone(LAYERS)
    result = train_stages(StubModel(backbone), backbone, "train", "valid", config, tmp_path)
    assert [s.name for s in result.stages] == ["dense", "first_ft"]


def test_class_weights_only_in_dense_stage(config, tmp_path: Path) -> None:
    backbone = StubBackbone(LAYERS)
    model = StubModel(backbone)
    train_stages(model, backbone, "train", "valid", config, tmp_path)

    assert model.fits[0]["class_weight"] == {1: 10.0, 0: 1.0}
    assert "class_weight" not in model.fits[1]
    assert "class_weight" not in model.fits[2]


def test_stage_compile_and_callbacks(config, tmp_path: Path) -> None:
    backbone = StubBackbone(LAYERS)
    model = StubModel(backbone)
    result = train_stages(model, backbone, "train", "valid", config, tmp_path)

    for compiled in model.compiled:
        assert compiled["loss"] == "binary_crossentropy"
        assert compiled["metrics"] == ["accuracy"]
        assert isinstance(compiled["optimizer"], keras.optimizers.RMSprop)

    plateau = [
        any(isinstance(cb, keras.callbacks.ReduceLROnPlateau) for cb in fit["callbacks"])
        for fit in model.fits
    ]
    assert plateau == [False, True, True]
    for fit in model.fits:
        assert fit["steps_per_epoch"] == 1
        assert fit["epochs"] == 1
        assert fit["validation_steps"] == 1
        assert fit["validation_data"] == "valid"

    assert [Path(s.checkpoint_path).name for s in result.stages] == [
        "model_train-dense.keras", "model_fine-tune-1.keras", "model_fine-tune-2.keras",
    ]
    assert [Path(s.log_path).name for s in result.stages] == [
        "log_train-dense.csv", "log_fine-tune-1.csv", "log_fine-tune-2.csv",
    ]


def test_stage_records_best_validation(config, tmp_path: Path) -> None:
    backbone = StubBackbone(LAYERS)
    result = train_stages(StubModel(backbone), backbone, "train", "valid", config, tmp_path)
    dense = result.stages[0]
    assert dense.best_epoch == 2
    assert dense.best_val_loss == pytest.approx(0.4)
    assert dense.best_val_accuracy == pytest.approx(0.8)
    assert dense.duration_seconds >= 0
    assert dense.summary()["epochs_run"] == 4


def test_fit_error_becomes_training_failure(config, tmp_path: Path) -> None:
    class FailingModel(StubModel):
        def fit(self, train_flow, **kwargs):
            raise ValueError("boom")

    backbone = StubBackbone(LAYERS)
    result = RunResult()
    with pytest.raises(TrainingFailure, match="train-dense"):
        train_stages(FailingModel(backbone), backbone, "train", "valid", config, tmp_path, result)
    assert result.stages == []


def test_best_validation_ties_and_nan() -> None:
    history = {"val_loss": [float("nan"), 0.3, 0.3], "val_accuracy": [0.1, 0.7, 0.9]}
    assert best_validation(history) == (2, 0.3, 0.7)

    epoch, loss, acc = best_validation({"val_loss": [float("nan")], "val_accuracy": [0.5]})
    assert epoch is None
    assert math.isnan(loss) and math.isnan(acc)


@pytest.mark.parametrize("stage_name", ["dense", "first_ft"])
def test_stage_runs_full_step_budget_on_small_data(
    raw_params: dict, tiny_backbone, tmp_path: Path, monkeypatch, stage_name: str
) -> None:
    # 8 training images at batch size 2: 20 steps need five passes over the data.
    raw_params.update({
        f"{stage_name}_steps_per_epoch": 10,
        f"{stage_name}_epochs": 2,
        f"{stage_name}_validation_steps": 5,
    })
    config = build_config(raw_params)
    model, backbone = build_model(config, backbone=tiny_backbone((8, 8)))
    train_feed, valid_feed = make_feeds(config, *split_dirs(config))

    batches = []
    counter = keras.callbacks.LambdaCallback(on_train_batch_end=lambda batch, logs: batches.append(batch))
    make_callbacks = train_module.make_callbacks
    monkeypatch.setattr(train_module, "make_callbacks", lambda *args: make_callbacks(*args) + [counter])

    record = run_stage(model, backbone, config.stage(stage_name), 1, train_feed, valid_feed, config, tmp_path)

    assert len(batches) == 20
    assert len(record.history["loss"]) == 2
    assert len(record.history["val_loss"]) == 2
    assert record.best_epoch in (1, 2)
