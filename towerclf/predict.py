"""
Score every validation image with the trained model.

- Load all files under the validation root into one (N, H, W, 3) batch.
- One predict call for the whole batch.
- Ground truth comes from the path below the validation root: 0 if it contains
  the negative class folder, else 1.
- Predictions are written to CSV before any evaluation reads them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
import pandas as pd
import tensorflow as tf

from .errors import ScoringFailure
from .preprocess import list_image_files, load_and_preprocess

logger = logging.getLogger(__name__)

COLUMNS = ["pred_prob", "img_name", "truth"]


@dataclass(frozen=True)
class PredictionRecord:
    pred_prob: float
    img_name: str
    truth: int


def ground_truth(path: str, negative_token: str, root=None) -> int:
    """0 when `negative_token` appears in the path below `root` (the whole path if no root), else 1."""
    if root is not None:
        path = Path(path).relative_to(root)
    return 0 if negative_token in str(path) else 1


def load_batch(paths: list[str], img_size: tuple[int, int]) -> np.ndarray:
    return np.stack([load_and_preprocess(p, img_size) for p in paths])


def score(model, valid_dir, img_size: tuple[int, int], negative_token: str) -> list[PredictionRecord]:
    """Predicted probability and path-derived label for every file under valid_dir."""
    paths = list_image_files(valid_dir)
    if not paths:
        raise ScoringFailure(f"No images to score under {valid_dir}")
    logger.info("Scoring %d validation images.", len(paths))

    batch = load_batch(paths, img_size)
    try:
        probs = np.asarray(model.predict(batch, verbose=0), dtype=float).reshape(-1)
    except (tf.errors.OpError, ValueError) as err:
        raise ScoringFailure(f"Prediction failed for batch of shape {batch.shape}: {err}") from err
    if probs.shape[0] != len(paths):
        raise ScoringFailure(f"Got {probs.shape[0]} predictions for {len(paths)} images")

    return [
        PredictionRecord(
            pred_prob=float(p),
            img_name=path,
            truth=ground_truth(path, negative_token, valid_dir),
        )
        for p, path in zip(probs, paths)
    ]


def to_frame(records: list[PredictionRecord]) -> pd.DataFrame:
    return pd.DataFrame([r.__dict__ for r in records], columns=COLUMNS)


def write_predictions(records: list[PredictionRecord], path) -> None:
    to_frame(records).to_csv(path, index=False)


def read_predictions(path) -> list[PredictionRecord]:
    df = pd.read_csv(path, float_precision="round_trip")
    return [
        PredictionRecord(pred_prob=float(row.pred_prob), img_name=str(row.img_name), truth=int(row.truth))
        for row in df.itertuples(index=False)
    ]
