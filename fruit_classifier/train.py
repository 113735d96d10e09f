from __future__ import annotations

import argparse
import logging
import sys
from typing import Optional, Sequence

from .benchmark import record_benchmark
from .config import TrainingConfig, load_config, override_config, save_config
from .data import scan_dataset
from .errors import FruitClassifierError
from .evaluate import Metrics, evaluate_predictions, format_report
from .persistence import save_model
from .pipeline import ClassificationPipeline
from .utils import configure_logging

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Train a transfer-learning fruit image classifier.")
    parser.add_argument("--config", type=str, default=None, help="Path to YAML config file.")
    parser.add_argument("--train-dir", type=str, help="Root folder of the training images.")
    parser.add_argument("--test-dir", type=str, help="Root folder of the test images.")
    parser.add_argument("--model-dir", type=str, help="Directory for storing the model archive.")
    parser.add_argument("--results-dir", type=str, help="Directory holding the benchmark log.")
    parser.add_argument("--model-name", type=str, help="Name of the model file and benchmark entry.")
    parser.add_argument("--backbone", type=str, help="Torchvision backbone used for feature extraction.")
    parser.add_argument("--no-pretrained", action="store_true", help="Start the backbone from random weights.")
    parser.add_argument("--image-size", type=int, help="Override input image size.")
    parser.add_argument("--epochs", type=int, help="Override number of epochs.")
    parser.add_argument("--batch-size", type=int, help="Override batch size.")
    parser.add_argument("--learning-rate", type=float, help="Override learning rate.")
    parser.add_argument("--seed", type=int, help="Override random seed.")
    parser.add_argument("--device", type=str, help="Preferred compute device (cuda/mps/cpu).")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level.")
    return parser.parse_args(argv)


def run(config: TrainingConfig) -> Metrics:
    """Scan, fit, save, evaluate and record one training run."""
    config.ensure_dirs()
    pipeline = ClassificationPipeline(config)

    train_samples = scan_dataset(config.train_dir)
    print("Training model...")
    model = pipeline.fit(train_samples)

    model_path = save_model(model, config.model_path)
    save_config(config, model_path.with_suffix(".yaml"))
    print(f"Model saved to: {model_path}")

    test_samples = scan_dataset(config.test_dir)
    predictions = pipeline.predict(model, test_samples)
    metrics = evaluate_predictions(predictions, test_samples, model.codec)

    print(format_report(metrics))
    record_benchmark(config.results_dir, config.model_name, metrics)
    return metrics


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        config = load_config(args.config)
        overrides = {
            "train_dir": args.train_dir,
            "test_dir": args.test_dir,
            "model_dir": args.model_dir,
            "results_dir": args.results_dir,
            "model_name": args.model_name,
            "backbone": args.backbone,
            "pretrained": False if args.no_pretrained else None,
            "image_size": args.image_size,
            "epochs": args.epochs,
            "batch_size": args.batch_size,
            "learning_rate": args.learning_rate,
            "seed": args.seed,
            "device": args.device,
        }
        config = override_config(config, overrides)
        logger.info("Starting run %s with backbone %s (seed %d)", config.model_name, config.backbone, config.seed)
        run(config)
    except FruitClassifierError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
