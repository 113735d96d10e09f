"""
Exception hierarchy for the fruit classifier.

Every error raised by the pipeline derives from ``FruitClassifierError`` so the
command line entry points can report it and exit non-zero in one place.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class FruitClassifierError(Exception):
    """Base class for all fruit classifier errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ConfigError(FruitClassifierError):
    """Raised when a configuration file contains unknown or invalid values."""


class DatasetNotFoundError(FruitClassifierError):
    """Raised when a dataset root is missing or has no label directories."""


class EmptyDatasetError(FruitClassifierError):
    """Raised when training is requested on a dataset with zero samples."""


class ImageLoadError(FruitClassifierError):
    """Raised when an image file cannot be read or decoded."""


class UnknownLabelError(FruitClassifierError):
    """Raised when a label (or label index) is not part of the fitted codec."""


class EvaluationInputError(FruitClassifierError):
    """Raised when predictions and ground truth do not line up."""


class ModelCorruptError(FruitClassifierError):
    """Raised when a persisted model cannot be read or has the wrong format."""


class TrainingCancelledError(FruitClassifierError):
    """Raised when a caller cancels ``fit`` before it finishes."""
