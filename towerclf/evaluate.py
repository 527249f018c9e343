"""
Validation-set evaluation.

- Threshold sweep: for every split point in the probability-sorted predictions,
  the full confusion matrix and sensitivity / specificity / PPV / NPV.
- Summary: ROC AUC and best achievable accuracy from the saved predictions,
  computed independently with scikit-learn.
- Distribution plot of predicted probabilities by true class.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, fields

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt  # noqa: E402
import numpy as np  # noqa: E402
import pandas as pd  # noqa: E402
from sklearn.metrics import roc_auc_score, roc_curve  # noqa: E402

from .predict import PredictionRecord, read_predictions  # noqa: E402

logger = logging.getLogger(__name__)

NA = float("nan")


@dataclass(frozen=True)
class ConfusionRow:
    split_val: float
    num_below_split: int
    num_above_split: int
    false_neg: int
    true_neg: int
    false_pos: int
    true_pos: int
    sens_recall: float
    spec: float
    ppv_precision: float
    npv: float


CONFUSION_COLUMNS = [f.name for f in fields(ConfusionRow)]


def _ratio(num: int, den: int) -> float:
    """num / den, NaN when the denominator is zero."""
    return num / den if den else NA


def rates(
    true_pos: int,
    false_pos: int,
    true_neg: int,
    false_neg: int,
    total_pos: int,
    total_neg: int,
) -> dict:
    """Sensitivity, specificity, PPV and NPV; undefined ratios are NaN."""
    return {
        "sens_recall": _ratio(true_pos, total_pos),
        "spec": _ratio(true_neg, total_neg),
        "ppv_precision": _ratio(true_pos, true_pos + false_pos),
        "npv": _ratio(true_neg, true_neg + false_neg),
    }


def sort_predictions(records: list[PredictionRecord]) -> list[PredictionRecord]:
    """Ascending by probability; ties keep their input order."""
    return sorted(records, key=lambda r: r.pred_prob)


def sweep(records: list[PredictionRecord]) -> list[ConfusionRow]:
    """
    One ConfusionRow per split i = 1..N-1 of the sorted predictions: the first i
    are predicted negative, the rest positive. Each row is counted from scratch.
    """
    ordered = sort_predictions(records)
    n = len(ordered)
    total_pos = sum(1 for r in ordered if r.truth == 1)
    total_neg = sum(1 for r in ordered if r.truth == 0)

    rows = []
    for i in range(1, n):
        below = ordered[:i]
        above = ordered[i:]
        false_neg = sum(1 for r in below if r.truth == 1)
        true_neg = sum(1 for r in below if r.truth == 0)
        false_pos = sum(1 for r in above if r.truth == 0)
        true_pos = sum(1 for r in above if r.truth == 1)
        rows.append(ConfusionRow(
            split_val=ordered[i - 1].pred_prob,
            num_below_split=i,
            num_above_split=n - i,
            false_neg=false_neg,
            true_neg=true_neg,
            false_pos=false_pos,
            true_pos=true_pos,
            **rates(true_pos, false_pos, true_neg, false_neg, total_pos, total_neg),
        ))
    return rows


def write_confusion(rows: list[ConfusionRow], path) -> None:
    df = pd.DataFrame([asdict(r) for r in rows], columns=CONFUSION_COLUMNS)
    df.to_csv(path, index=False, na_rep="NA")


def read_confusion(path) -> list[ConfusionRow]:
    df = pd.read_csv(path, float_precision="round_trip")
    rows = []
    for rec in df.to_dict("records"):
        for key in ("num_below_split", "num_above_split", "false_neg", "true_neg", "false_pos", "true_pos"):
            rec[key] = int(rec[key])
        for key in ("split_val", "sens_recall", "spec", "ppv_precision", "npv"):
            rec[key] = float(rec[key])
        rows.append(ConfusionRow(**rec))
    return rows


def rows_equal(a: list[ConfusionRow], b: list[ConfusionRow]) -> bool:
    """Row-wise equality where NaN matches NaN."""
    if len(a) != len(b):
        return False
    for left, right in zip(a, b):
        for name in CONFUSION_COLUMNS:
            x, y = getattr(left, name), getattr(right, name)
            if isinstance(x, float) and math.isnan(x):
                if not (isinstance(y, float) and math.isnan(y)):
                    return False
            elif x != y:
                return False
    return True


def max_accuracy(y_true: np.ndarray, y_prob: np.ndarray) -> float:
    """Best accuracy over every cutoff roc_curve considers, including predict-all-negative."""
    fpr, tpr, _ = roc_curve(y_true, y_prob, drop_intermediate=False)
    pos = float(np.sum(y_true == 1))
    neg = float(np.sum(y_true == 0))
    acc = (tpr * pos + (1 - fpr) * neg) / (pos + neg)
    return float(np.max(acc))


def summarize(predictions_path) -> dict:
    """ROC AUC and max possible accuracy read straight from the predictions CSV."""
    df = pd.read_csv(predictions_path, float_precision="round_trip")
    y_true = df["truth"].to_numpy(dtype=int)
    y_prob = df["pred_prob"].to_numpy(dtype=float)
    summary = {
        "roc_auc": float(roc_auc_score(y_true, y_prob)),
        "max_accuracy": max_accuracy(y_true, y_prob),
    }
    logger.info(
        "Final model performance measures: ROC AUC = %.3f, Max possible accuracy = %.3f",
        summary["roc_auc"], summary["max_accuracy"],
    )
    return summary


def plot_distribution(records: list[PredictionRecord], output_path, binwidth: float = 0.01) -> None:
    """Histogram of predicted probabilities by true class, as a proportion of all images."""
    probs = np.array([r.pred_prob for r in records], dtype=float)
    truth = np.array([r.truth for r in records], dtype=int)
    bins = np.arange(0.0, 1.0 + binwidth, binwidth)
    weight = 1.0 / max(len(probs), 1)
    colors = {0: "#1b9e77", 1: "#d95f02"}

    fig, ax = plt.subplots(figsize=(8, 5))
    for label in (0, 1):
        mask = truth == label
        ax.hist(
            probs[mask],
            bins=bins,
            weights=np.full(mask.sum(), weight),
            color=colors[label],
            alpha=0.4,
            label=str(label),
        )
    ax.set_title("Model predicted probabilities for validation set, by actual value")
    ax.set_xlabel("Predicted probability")
    ax.set_ylabel("Proportion of all images")
    ax.legend(title="Truth")
    fig.tight_layout()
    fig.savefig(output_path, dpi=150)
    plt.close(fig)


def evaluate_predictions(predictions_path, confusion_path, plot_path) -> dict:
    """Sweep, save the confusion table, summarize and plot from the saved predictions."""
    records = read_predictions(predictions_path)
    rows = sweep(records)
    write_confusion(rows, confusion_path)
    logger.info("Wrote %d threshold rows to %s", len(rows), confusion_path)
    summary = summarize(predictions_path)
    plot_distribution(records, plot_path)
    return summary
