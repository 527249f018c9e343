"""Image feeds for training and single-image loading for scoring.

- Training / validation feeds: Keras ImageDataGenerator over the class folders,
  rescaled to [0, 1], resized to the run's target size; the training feed
  optionally mirrors images. Both feeds loop forever.
- Scoring: decode → RGB → resize → scale to [0, 1], float32 (H, W, 3).
"""
from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np
from PIL import Image, UnidentifiedImageError
import tensorflow as tf
from tensorflow import keras

from .errors import RunEnvironmentError, ScoringFailure

RESCALE = 1.0 / 255


def make_datagen(horizontal_flip: bool = False, vertical_flip: bool = False):
    return keras.preprocessing.image.ImageDataGenerator(
        rescale=RESCALE,
        horizontal_flip=horizontal_flip,
        vertical_flip=vertical_flip,
    )


def flow_from_split(datagen, split_dir: Path, config, shuffle: bool = True):
    """Binary-label batches from `split_dir`; negative class → 0, positive class → 1."""
    return datagen.flow_from_directory(
        str(split_dir),
        target_size=config.img_size,
        batch_size=config.batch_size,
        class_mode="binary",
        classes=[config.negative_class, config.positive_class],
        shuffle=shuffle,
    )


def one_pass(flow):
    """Every batch of `flow` once, then reshuffle for the next pass."""
    for i in range(len(flow)):
        images, labels = flow[i]
        yield images.astype(np.float32), labels.astype(np.float32)
    flow.on_epoch_end()


def endless_feed(flow, img_size: tuple[int, int]) -> tf.data.Dataset:
    """
    Repeat `flow` forever, so `fit` can draw steps_per_epoch * epochs batches
    whatever the number of images. A directory iterator alone stops after one pass.
    """
    if len(flow) == 0:
        raise RunEnvironmentError(f"No images found under {flow.directory}")
    height, width = img_size
    signature = (
        tf.TensorSpec(shape=(None, height, width, 3), dtype=tf.float32),
        tf.TensorSpec(shape=(None,), dtype=tf.float32),
    )
    return tf.data.Dataset.from_generator(lambda: one_pass(flow), output_signature=signature).repeat()


def make_feeds(config, train_dir: Path, valid_dir: Path):
    """Return endless (train_feed, valid_feed); only the training feed is augmented."""
    train_flow = flow_from_split(
        make_datagen(config.img_horizontal_flip, config.img_vertical_flip),
        train_dir,
        config,
    )
    valid_flow = flow_from_split(make_datagen(), valid_dir, config)
    return endless_feed(train_flow, config.img_size), endless_feed(valid_flow, config.img_size)


def list_image_files(root) -> list[str]:
    """All files below `root`, recursively, in sorted order."""
    return sorted(str(p) for p in Path(root).rglob("*") if p.is_file())


def _read_rgb(path: str) -> np.ndarray:
    img = cv2.imread(path, cv2.IMREAD_COLOR)
    if img is not None:
        return cv2.cvtColor(img, cv2.COLOR_BGR2RGB)
    try:
        with Image.open(path) as pil_img:
            return np.array(pil_img.convert("RGB"))
    except (UnidentifiedImageError, OSError) as err:
        raise ScoringFailure(f"Could not decode image: {path}") from err


def load_and_preprocess(path: str, img_size: tuple[int, int]) -> np.ndarray:
    """Load image from path; output float32 (H, W, 3) in [0, 1] at img_size=(H, W)."""
    img = _read_rgb(path)
    height, width = img_size
    if img.shape[:2] != (height, width):
        img = cv2.resize(img, (width, height), interpolation=cv2.INTER_NEAREST)
    return img.astype(np.float32) * RESCALE
