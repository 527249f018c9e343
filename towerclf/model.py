"""
Model assembly: pretrained backbone (frozen) → Flatten → dense stack → Dense(1, sigmoid).
"""
from __future__ import annotations

from tensorflow import keras
from tensorflow.keras import Model, layers

from .config import BACKBONES
from .errors import ConfigValidationError
from .params import RunConfig


def load_backbone(name: str, img_size: tuple[int, int]) -> Model:
    """ImageNet weights, classification head removed, input (H, W, 3)."""
    constructor = getattr(keras.applications, BACKBONES[name])
    return constructor(weights="imagenet", include_top=False, input_shape=(*img_size, 3))


def build_model(config: RunConfig, backbone: Model = None) -> tuple[Model, Model]:
    """
    Stack the configured head on `backbone` (loaded from config.base_model when
    not given). Returns (model, backbone); the backbone comes back frozen and
    its layer list is what later stages unfreeze.
    """
    if backbone is None:
        backbone = load_backbone(config.base_model, config.img_size)
    backbone.trainable = False

    x = backbone.output
    x = layers.Flatten(name="flatten")(x)
    for i, dense in enumerate(config.dense_structure, start=1):
        x = layers.Dense(dense.units, activation="relu", name=f"dense_{i}")(x)
        if dense.dropout > 0:
            x = layers.Dropout(dense.dropout, name=f"dropout_{i}")(x)
    if config.add_small_final_layer:
        x = layers.Dense(config.small_layer_size, activation="relu", name="dense_small")(x)
    x = layers.Dense(1, activation="sigmoid", name="output")(x)
    model = Model(inputs=backbone.input, outputs=x)
    return model, backbone


def describe_model(model) -> str:
    lines = []
    model.summary(print_fn=lambda line, *args, **kwargs: lines.append(line))
    return "\n".join(lines) + "\n"


def layer_index(backbone, name: str) -> int:
    for i, layer in enumerate(backbone.layers):
        if layer.name == name:
            return i
    raise ConfigValidationError(f"Backbone has no layer named {name!r}")


def check_unfreeze_points(backbone, stages) -> None:
    """
    Every fine-tune stage must name a backbone layer, and each later stage must
    unfreeze from the same or an earlier layer than the stage before it.
    """
    previous = None
    for stage in stages:
        if stage.unfreeze_from is None:
            continue
        index = layer_index(backbone, stage.unfreeze_from)
        if previous is not None and index > previous[1]:
            raise ConfigValidationError(
                f"`{stage.name}_unfreeze` ({stage.unfreeze_from}) comes after "
                f"`{previous[0]}_unfreeze`; later stages must unfreeze a superset of layers"
            )
        previous = (stage.name, index)
