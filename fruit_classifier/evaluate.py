from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional, Sequence, Tuple

import numpy as np
from sklearn.metrics import accuracy_score, confusion_matrix, log_loss, precision_score, recall_score

from .benchmark import record_benchmark
from .config import load_config, override_config
from .data import LabelCodec, Sample, scan_dataset
from .errors import EvaluationInputError, FruitClassifierError
from .persistence import load_model
from .pipeline import ClassificationPipeline, PredictionRecord
from .utils import configure_logging, get_device

logger = logging.getLogger(__name__)

# Probabilities are clamped to this floor before taking the log.
LOG_LOSS_EPSILON = 1e-15


@dataclass(frozen=True, eq=False)
class Metrics:
    """Multiclass metrics; rows and columns of the confusion matrix follow ``labels``."""

    labels: Tuple[str, ...]
    macro_accuracy: float
    micro_accuracy: float
    log_loss: float
    log_loss_reduction: float
    confusion_matrix: np.ndarray
    recall: np.ndarray
    precision: np.ndarray

    def format_confusion_table(self) -> str:
        row_width = max([9, *(len(label) for label in self.labels)])
        col_width = max([6, *(len(label) for label in self.labels)])
        rule = "=" * ((col_width + 3) * len(self.labels) + 7)

        lines = [
            "Confusion table",
            f"{'':<{row_width}} ||{rule}",
            f"{'PREDICTED':<{row_width}} ||" + "".join(f" {label:>{col_width}} |" for label in self.labels) + " Recall",
            f"{'TRUTH':<{row_width}} ||{rule}",
        ]
        for label, row, recall in zip(self.labels, self.confusion_matrix, self.recall):
            counts = "".join(f" {int(count):>{col_width}} |" for count in row)
            lines.append(f"{label:>{row_width}} ||{counts} {recall:.4f}")
        lines.append(f"{'':<{row_width}} ||{rule}")
        precision = "".join(f" {value:>{col_width}.4f} |" for value in self.precision)
        lines.append(f"{'Precision':<{row_width}} ||{precision}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "labels": list(self.labels),
            "macro_accuracy": self.macro_accuracy,
            "micro_accuracy": self.micro_accuracy,
            "log_loss": self.log_loss,
            "log_loss_reduction": self.log_loss_reduction,
            "confusion_matrix": self.confusion_matrix.tolist(),
            "recall": self.recall.tolist(),
            "precision": self.precision.tolist(),
        }


def compute_metrics(
    truth: np.ndarray,
    predicted: np.ndarray,
    probabilities: np.ndarray,
    labels: Sequence[str],
) -> Metrics:
    """Compute metrics from encoded labels and an (N, K) probability matrix."""
    class_ids = list(range(len(labels)))

    confusion = confusion_matrix(truth, predicted, labels=class_ids)
    recall = recall_score(truth, predicted, labels=class_ids, average=None, zero_division=0)
    precision = precision_score(truth, predicted, labels=class_ids, average=None, zero_division=0)

    # Classes absent from the ground truth have no recall and are left out of the macro average.
    support = confusion.sum(axis=1)
    present = support > 0

    clamped = np.clip(np.asarray(probabilities, dtype=np.float64), LOG_LOSS_EPSILON, 1.0)
    clamped /= clamped.sum(axis=1, keepdims=True)
    loss = float(log_loss(truth, clamped, labels=class_ids))

    prior = support[present] / len(truth)
    prior_log_loss = float(-(prior * np.log(prior)).sum())
    reduction = 1.0 - loss / prior_log_loss if prior_log_loss > 0 else 0.0

    return Metrics(
        labels=tuple(labels),
        macro_accuracy=float(recall[present].mean()),
        micro_accuracy=float(accuracy_score(truth, predicted)),
        log_loss=loss,
        log_loss_reduction=float(reduction),
        confusion_matrix=confusion,
        recall=np.asarray(recall, dtype=np.float64),
        precision=np.asarray(precision, dtype=np.float64),
    )


def evaluate_predictions(
    predictions: Iterable[PredictionRecord],
    ground_truth: Iterable[Sample],
    codec: LabelCodec,
) -> Metrics:
    """Compare predictions against the samples they were made for, position by position."""
    predictions = list(predictions)
    ground_truth = list(ground_truth)
    if len(predictions) != len(ground_truth):
        raise EvaluationInputError(
            f"Got {len(predictions)} predictions for {len(ground_truth)} ground-truth samples."
        )
    if not predictions:
        raise EvaluationInputError("Cannot evaluate an empty set of predictions.")

    num_classes = len(codec)
    truth = np.empty(len(predictions), dtype=np.int64)
    predicted = np.empty(len(predictions), dtype=np.int64)
    probabilities = np.empty((len(predictions), num_classes), dtype=np.float64)

    for position, (record, sample) in enumerate(zip(predictions, ground_truth)):
        if record.sample != sample:
            raise EvaluationInputError(
                f"Prediction {position} is for '{record.sample.image_path}' "
                f"but ground truth {position} is '{sample.image_path}'."
            )
        if len(record.scores) != num_classes:
            raise EvaluationInputError(
                f"Prediction {position} has {len(record.scores)} scores, expected {num_classes}."
            )
        truth[position] = codec.encode(sample.label)
        predicted[position] = codec.encode(record.predicted_label)
        probabilities[position] = record.scores

    return compute_metrics(truth, predicted, probabilities, codec.labels)


def format_report(metrics: Metrics) -> str:
    return "\n".join(
        [
            f"Accuracy: {metrics.macro_accuracy:.2%}",
            f"LogLoss: {metrics.log_loss:.4f}",
            "Confusion Matrix:",
            metrics.format_confusion_table(),
        ]
    )


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate a saved fruit classifier on a labeled folder tree.")
    parser.add_argument("--config", type=str, help="Path to YAML config used during training.")
    parser.add_argument("--model", type=str, required=True, help="Model archive to evaluate.")
    parser.add_argument("--test-dir", type=str, help="Override the test dataset root.")
    parser.add_argument("--device", type=str, help="Override compute device.")
    parser.add_argument("--results-dir", type=str, help="Append the metrics to the benchmark log in this directory.")
    parser.add_argument("--model-name", type=str, help="Name recorded in the benchmark log.")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level.")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)
    try:
        config = load_config(args.config)
        config = override_config(config, {"device": args.device, "test_dir": args.test_dir, "model_name": args.model_name})

        model = load_model(args.model, device=get_device(config.device))
        test_samples = scan_dataset(config.test_dir)
        logger.info("Evaluating %s on %d test samples", args.model, len(test_samples))
        predictions = ClassificationPipeline(config).predict(model, test_samples)
        metrics = evaluate_predictions(predictions, test_samples, model.codec)

        print(format_report(metrics))
        if args.results_dir:
            record_benchmark(args.results_dir, config.model_name, metrics)
    except FruitClassifierError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
