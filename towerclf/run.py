"""
Run one model end to end:

validate params → create run dirs → feeds → assemble model → staged training
→ save run parameters → score validation images → threshold sweep → summary.

    python -m towerclf.run [params.json]
"""
from __future__ import annotations

import argparse
import json
import logging
import pprint
import sys
from pathlib import Path

from .check_setup import RunContext, provision
from .config import (
    CONFUSION_FILE,
    DEFAULT_PARAMS,
    DISTRIBUTION_PLOT_FILE,
    MODEL_STRUCTURE_FILE,
    PREDICTIONS_FILE,
    RUN_PARAMS_FILE,
    RUN_PARAMS_JSON,
)
from .errors import TowerClfError
from .evaluate import evaluate_predictions
from .model import build_model, check_unfreeze_points, describe_model
from .params import RunConfig, build_config, save_config
from .predict import score, write_predictions
from .preprocess import make_feeds
from .train import RunResult, train_stages

logger = logging.getLogger(__name__)


def write_run_parameters(config: RunConfig, context: RunContext, result: RunResult) -> None:
    report = {
        "config": config.to_raw(),
        "context": {
            "train_dir": str(context.train_dir),
            "valid_dir": str(context.valid_dir),
            "run_dir": str(context.run_dir),
            "class_counts": context.class_counts,
        },
        "stages": [stage.summary() for stage in result.stages],
    }
    context.artifact(RUN_PARAMS_FILE).write_text(pprint.pformat(report, sort_dicts=False) + "\n")
    save_config(config, context.artifact(RUN_PARAMS_JSON))


def run_one_model(raw_params: dict) -> tuple[RunResult, dict]:
    config = build_config(raw_params)
    model, backbone = build_model(config)
    check_unfreeze_points(backbone, config.stages)

    context = provision(config)
    train_flow, valid_flow = make_feeds(config, context.train_dir, context.valid_dir)
    context.artifact(MODEL_STRUCTURE_FILE).write_text(describe_model(model))

    result = train_stages(model, backbone, train_flow, valid_flow, config, context.run_dir)
    write_run_parameters(config, context, result)

    records = score(model, context.valid_dir, config.img_size, config.negative_class)
    predictions_path = context.artifact(PREDICTIONS_FILE)
    write_predictions(records, predictions_path)
    logger.info("Saved %d predictions to %s", len(records), predictions_path)

    summary = evaluate_predictions(
        predictions_path,
        context.artifact(CONFUSION_FILE),
        context.artifact(DISTRIBUTION_PLOT_FILE),
    )
    return result, summary


def load_params(path) -> dict:
    return json.loads(Path(path).read_text())


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Train, fine-tune and evaluate one tower classifier")
    parser.add_argument(
        "params",
        nargs="?",
        default=None,
        help="JSON file of parameters overriding the defaults in towerclf.config",
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    raw = dict(DEFAULT_PARAMS)
    if args.params:
        raw.update(load_params(args.params))
    try:
        run_one_model(raw)
    except TowerClfError as err:
        logger.error("%s: %s", type(err).__name__, err)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
