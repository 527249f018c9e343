"""
Check the image folder layout and create the per-run output directories.

Expected input:
    <img_base_dir>/<img_dir>/
        train/      {tower, notower}/
        validation/ {tower, notower}/
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from .config import TRAIN_SUBDIR, VALID_SUBDIR
from .errors import RunEnvironmentError
from .params import RunConfig

logger = logging.getLogger(__name__)


@dataclass
class RunContext:
    """Paths and class counts derived for one run."""

    train_dir: Path
    valid_dir: Path
    output_dir: Path
    models_dir: Path
    run_dir: Path
    class_counts: dict = field(default_factory=dict)

    def artifact(self, name: str) -> Path:
        return self.run_dir / name


def split_dirs(config: RunConfig) -> tuple[Path, Path]:
    root = Path(config.img_base_dir) / config.img_dir
    return root / TRAIN_SUBDIR, root / VALID_SUBDIR


def check(config: RunConfig) -> list[str]:
    """Return a list of layout problems; empty when the run can start."""
    errors = []
    train_dir, valid_dir = split_dirs(config)
    if not (train_dir.is_dir() and valid_dir.is_dir()):
        errors.append(
            f"`img_dir` must contain 2 directories named '{TRAIN_SUBDIR}' and '{VALID_SUBDIR}'"
        )
        return errors
    classes = (config.positive_class, config.negative_class)
    missing = [str(d / c) for d in (train_dir, valid_dir) for c in classes if not (d / c).is_dir()]
    if missing:
        errors.append(
            f"Both '{TRAIN_SUBDIR}' and '{VALID_SUBDIR}' directories must contain 2 directories "
            f"named '{config.positive_class}' and '{config.negative_class}' "
            f"(missing: {', '.join(missing)})"
        )
    return errors


def count_examples(split_dir: Path, classes) -> dict:
    return {c: sum(1 for p in (split_dir / c).iterdir() if p.is_file()) for c in classes}


def provision(config: RunConfig, now: Optional[datetime] = None) -> RunContext:
    """
    Validate the folder layout, count examples and create
    <output_dir>/<date>/models/<timestamp>/ for this run.
    """
    errors = check(config)
    if errors:
        raise RunEnvironmentError("; ".join(errors))

    train_dir, valid_dir = split_dirs(config)
    classes = (config.positive_class, config.negative_class)
    counts = {
        TRAIN_SUBDIR: count_examples(train_dir, classes),
        VALID_SUBDIR: count_examples(valid_dir, classes),
    }
    for split, split_counts in counts.items():
        logger.info(
            "%s images: %s",
            split,
            ", ".join(f"{c}={n}" for c, n in split_counts.items()),
        )

    now = now or datetime.now()
    output_dir = Path(config.output_dir) / now.strftime("%Y-%m-%d")
    models_dir = output_dir / "models"
    run_dir = models_dir / now.strftime("%Y-%m-%d_%H-%M-%S")
    try:
        models_dir.mkdir(parents=True, exist_ok=True)
        # Runs started within the same second collide; never reuse a run dir.
        run_dir.mkdir()
    except FileExistsError as err:
        raise RunEnvironmentError(f"Run directory already exists: {run_dir}") from err
    except OSError as err:
        raise RunEnvironmentError(f"Could not create run directories under {output_dir}: {err}") from err
    logger.info("Writing run artifacts to %s", run_dir)

    return RunContext(
        train_dir=train_dir.resolve(),
        valid_dir=valid_dir.resolve(),
        output_dir=output_dir,
        models_dir=models_dir,
        run_dir=run_dir,
        class_counts=counts,
    )
