from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest
from PIL import Image


def write_images(folder: Path, count: int, size=(8, 8), value: int = 128) -> list[Path]:
    folder.mkdir(parents=True, exist_ok=True)
    paths = []
    for i in range(count):
        arr = np.full((*size, 3), value + i, dtype=np.uint8)
        path = folder / f"img_{i:03d}.png"
        Image.fromarray(arr).save(path)
        paths.append(path)
    return paths


@pytest.fixture
def make_images():
    return write_images


@pytest.fixture
def image_tree(tmp_path: Path) -> dict:
    """img_base/slices/{train,validation}/{tower,notower} with a few 8x8 PNGs, plus an output dir."""
    base = tmp_path / "img_base"
    root = base / "slices"
    for split, n in (("train", 4), ("validation", 3)):
        write_images(root / split / "tower", n, value=200)
        write_images(root / split / "notower", n, value=20)
    output = tmp_path / "output"
    output.mkdir()
    return {"img_base_dir": str(base), "img_dir": "slices", "output_dir": str(output)}


@pytest.fixture
def raw_params(image_tree: dict) -> dict:
    return {
        **image_tree,
        "img_size": [8, 8],
        "batch_size": 2,
        "dense_structure": [{"units": 4, "dropout": 0.2}, {"units": 3, "dropout": 0}],
        "dense_steps_per_epoch": 1,
        "dense_epochs": 1,
        "dense_validation_steps": 1,
        "first_ft_unfreeze": "block2_conv1",
        "first_ft_steps_per_epoch": 1,
        "first_ft_epochs": 1,
        "first_ft_validation_steps": 1,
        "second_ft_unfreeze": "block1_conv1",
        "second_ft_steps_per_epoch": 1,
        "second_ft_epochs": 1,
        "second_ft_validation_steps": 1,
    }


@pytest.fixture
def tiny_backbone():
    """Small functional conv net with VGG-style layer names, in place of pretrained weights."""
    keras = pytest.importorskip("tensorflow").keras

    def build(img_size=(8, 8)):
        inputs = keras.Input(shape=(*img_size, 3))
        x = keras.layers.Conv2D(2, 3, padding="same", name="block1_conv1")(inputs)
        x = keras.layers.Conv2D(2, 3, padding="same", name="block1_conv2")(x)
        x = keras.layers.MaxPooling2D(name="block1_pool")(x)
        x = keras.layers.Conv2D(2, 3, padding="same", name="block2_conv1")(x)
        x = keras.layers.Conv2D(2, 3, padding="same", name="block2_conv2")(x)
        return keras.Model(inputs, x, name="tiny_backbone")

    return build
