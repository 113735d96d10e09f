"""
Append-only benchmark log shared by all training runs.

Each run adds a human-readable block to ``benchmark_results.txt`` and one JSON
object to ``benchmark_results.jsonl``. A block is assembled in memory and
written with a single append while an advisory lock file is held, so entries from
different threads or processes never interleave.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING

from filelock import FileLock

if TYPE_CHECKING:
    from .evaluate import Metrics

logger = logging.getLogger(__name__)

RESULTS_FILENAME = "benchmark_results.txt"
RECORDS_FILENAME = "benchmark_results.jsonl"
LOCK_FILENAME = "benchmark_results.lock"


def format_benchmark_block(model_name: str, metrics: "Metrics", timestamp: str) -> str:
    return (
        f"=== {model_name} | {timestamp} ===\n"
        f"LogLoss: {metrics.log_loss:.4f}\n"
        f"MacroAccuracy: {metrics.macro_accuracy:.2%}\n"
        f"{metrics.format_confusion_table()}\n"
        "\n"
    )


def _append(path: Path, text: str) -> None:
    with path.open("a", encoding="utf-8") as handle:
        handle.write(text)


def record_benchmark(directory: str | Path, model_name: str, metrics: "Metrics") -> Path:
    """Append the metrics of one run to the benchmark logs in ``directory``."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now(timezone.utc).isoformat(timespec="seconds")

    block = format_benchmark_block(model_name, metrics, timestamp)
    record = {"model_name": model_name, "timestamp": timestamp, **metrics.to_dict()}

    results_path = directory / RESULTS_FILENAME
    with FileLock(str(directory / LOCK_FILENAME)):
        _append(results_path, block)
        _append(directory / RECORDS_FILENAME, json.dumps(record) + "\n")
    logger.info("Recorded benchmark for %s in %s", model_name, results_path)
    return results_path
